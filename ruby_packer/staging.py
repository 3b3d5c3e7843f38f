"""Payload staging.

Copies (or builds) the project payload into the work directory whose contents
become the embedded image, and resolves the entrance to its path inside the
mounted image.

Layout of the work directory::

    __work_dir__/
        __enclose_io_memfs__/      -> mounted at MEMFS_ROOT
            _local_/               project copy (BundledApp, BareScript)
            _gems_/                gem install dir (GemPackage)
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import time

from ruby_packer.errors import ConfigurationError, EntranceNotFound, StagingError
from ruby_packer.options import PackagingOptions
from ruby_packer.payload import BareScript, BundledApp, GemPackage, Payload
from ruby_packer.runner import ToolRunner


MEMFS_ROOT: str = "/__enclose_io_memfs__"

_LOCAL: str = "_local_"
_GEMS: str = "_gems_"


@dataclass(frozen=True, slots=True)
class StagingResult:
    """Outcome of staging a payload.

    :ivar work_dir: Directory to compress into the image.
    :ivar entrance: Absolute path of the entrance inside the mounted image.
    :ivar chdir_at_startup: Directory the interpreter switches to at boot, if any.
    """

    work_dir: pathlib.Path
    entrance: str
    chdir_at_startup: str | None

    def host_path(self, memfs_path: str) -> pathlib.Path:
        """Map a path inside the mounted image back onto the staged tree.

        :param memfs_path: Absolute path under :data:`MEMFS_ROOT`.
        :returns: Corresponding path under :attr:`work_dir`.
        """

        return self.work_dir.joinpath(*pathlib.PurePosixPath(memfs_path).parts[1:])


@dataclass(frozen=True, slots=True)
class CopyStats:
    """Stats collected while copying a directory tree.

    :ivar files_copied: Number of files (and symlinks) copied.
    :ivar bytes_copied: Total bytes copied (best-effort).
    """

    files_copied: int
    bytes_copied: int


def prepare_work_dir(options: PackagingOptions) -> pathlib.Path:
    """Wipe and recreate the work directory.

    :param options: Packaging options.
    :returns: The inner directory mounted at :data:`MEMFS_ROOT`.
    """

    work_dir: pathlib.Path = options.work_dir
    if work_dir.exists() is True:
        shutil.rmtree(work_dir)
    inner: pathlib.Path = work_dir / MEMFS_ROOT.lstrip("/")
    inner.mkdir(parents=True)
    return inner


def stage_payload(
    payload: Payload,
    *,
    options: PackagingOptions,
    runner: ToolRunner,
    logger: logging.Logger,
) -> StagingResult:
    """Stage ``payload`` into the work directory and resolve the entrance.

    :param payload: Classified project payload.
    :param options: Packaging options; ``options.entrance`` must be set.
    :param runner: Runner for bundle/gem invocations.
    :param logger: Logger for progress output.
    :returns: Staging result.
    :raises ConfigurationError: If there is no entrance, or a bare-script
        entrance lies outside the project root.
    :raises EntranceNotFound: If the entrance cannot be resolved.
    :raises StagingError: If the gem cannot be built.
    """

    entrance: str | None = options.entrance
    entrance_path: pathlib.Path | None = options.entrance_path
    if entrance is None or entrance_path is None:
        raise ConfigurationError("Staging a payload requires an entrance.")

    t0: float = time.perf_counter()
    inner: pathlib.Path = prepare_work_dir(options)
    gems_dir: pathlib.Path = inner / _GEMS
    excludes: set[pathlib.Path] = {options.output}

    result: StagingResult
    if isinstance(payload, GemPackage):
        result = _stage_gem(
            payload,
            entrance=entrance,
            pre_prepare_dir=options.tmpdir / "__pre_prepare__",
            gems_dir=gems_dir,
            excludes=excludes,
            work_dir=options.work_dir,
            runner=runner,
            logger=logger,
        )
    elif isinstance(payload, BundledApp):
        result = _stage_bundled(
            payload,
            entrance=entrance,
            entrance_path=entrance_path,
            local_dir=inner / _LOCAL,
            excludes=excludes,
            work_dir=options.work_dir,
            runner=runner,
            logger=logger,
        )
    elif isinstance(payload, BareScript):
        result = _stage_bare(
            payload,
            entrance=entrance,
            entrance_path=entrance_path,
            local_dir=inner / _LOCAL,
            excludes=excludes,
            work_dir=options.work_dir,
            logger=logger,
        )
    else:
        raise StagingError(f"Unsupported payload: {payload!r}")

    gems_cache: pathlib.Path = gems_dir / "cache"
    if gems_cache.exists() is True:
        shutil.rmtree(gems_cache)

    t1: float = time.perf_counter()
    logger.info(f"rubyc: staged payload in {t1 - t0:.2f}s; entrance={result.entrance}")
    return result


def _stage_gem(
    payload: GemPackage,
    *,
    entrance: str,
    pre_prepare_dir: pathlib.Path,
    gems_dir: pathlib.Path,
    excludes: set[pathlib.Path],
    work_dir: pathlib.Path,
    runner: ToolRunner,
    logger: logging.Logger,
) -> StagingResult:
    """Build the project's gem and install it into ``gems_dir``."""

    if pre_prepare_dir.exists() is True:
        shutil.rmtree(pre_prepare_dir)
    _copy_project(src=payload.root, dst=pre_prepare_dir, excludes=excludes, logger=logger)

    for stale in sorted(pre_prepare_dir.glob("*.gem")):
        stale.unlink()

    logger.info("rubyc: building the gem")
    gemspec_name: str = payload.gemspec.name
    if any(p.name == "Gemfile" and p.is_file() is True for p in pre_prepare_dir.iterdir()):
        runner.run(["bundle", "install"], cwd=pre_prepare_dir)
        runner.run(["bundle", "exec", "gem", "build", gemspec_name], cwd=pre_prepare_dir)
    else:
        runner.run(["gem", "build", gemspec_name], cwd=pre_prepare_dir)

    gems: list[pathlib.Path] = sorted(pre_prepare_dir.glob("*.gem"))
    if len(gems) != 1:
        raise StagingError(
            f"gem building failed: expected one .gem in {pre_prepare_dir}, found {len(gems)}"
        )

    gems_dir.mkdir(parents=True, exist_ok=True)
    runner.run(
        [
            "gem",
            "install",
            gems[0].name,
            "--force",
            "--local",
            "--no-document",
            "--install-dir",
            str(gems_dir),
        ],
        cwd=pre_prepare_dir,
    )

    bin_dir: pathlib.Path = gems_dir / "bin"
    if (bin_dir / entrance).is_file() is True:
        return StagingResult(
            work_dir=work_dir,
            entrance=f"{MEMFS_ROOT}/{_GEMS}/bin/{entrance}",
            chdir_at_startup=None,
        )
    raise EntranceNotFound(entrance, _list_dir(bin_dir))


def _stage_bundled(
    payload: BundledApp,
    *,
    entrance: str,
    entrance_path: pathlib.Path,
    local_dir: pathlib.Path,
    excludes: set[pathlib.Path],
    work_dir: pathlib.Path,
    runner: ToolRunner,
    logger: logging.Logger,
) -> StagingResult:
    """Copy the project and deploy its bundle in place."""

    # Outside the root the entrance can only name a binstub.
    rel: str | None = _relative_to_root(entrance_path, payload.root)
    _copy_project(src=payload.root, dst=local_dir, excludes=excludes, logger=logger)
    runner.run(["bundle", "install", "--deployment"], cwd=local_dir)

    memfs_local: str = f"{MEMFS_ROOT}/{_LOCAL}"
    memfs_entrance: str | None = None
    if rel is not None and (local_dir / rel).is_file() is True:
        memfs_entrance = f"{memfs_local}/{rel}"
    elif (local_dir / "bin" / entrance).is_file() is True:
        memfs_entrance = f"{memfs_local}/bin/{entrance}"
    else:
        logger.info(f"rubyc: {entrance!r} not found; generating binstubs")
        runner.run(["bundle", "install", "--deployment", "--binstubs"], cwd=local_dir)
        if (local_dir / "bin" / entrance).is_file() is True:
            memfs_entrance = f"{memfs_local}/bin/{entrance}"

    if memfs_entrance is None:
        raise EntranceNotFound(entrance, _list_dir(local_dir / "bin"))

    _strip_vcs_and_caches(local_dir, logger=logger)
    return StagingResult(
        work_dir=work_dir,
        entrance=memfs_entrance,
        chdir_at_startup=memfs_local,
    )


def _stage_bare(
    payload: BareScript,
    *,
    entrance: str,
    entrance_path: pathlib.Path,
    local_dir: pathlib.Path,
    excludes: set[pathlib.Path],
    work_dir: pathlib.Path,
    logger: logging.Logger,
) -> StagingResult:
    """Copy the project tree and locate the entrance inside the copy."""

    rel: str | None = _relative_to_root(entrance_path, payload.root)
    if rel is None:
        raise ConfigurationError(f"Entrance {entrance_path} is not in the project root {payload.root}")
    _copy_project(src=payload.root, dst=local_dir, excludes=excludes, logger=logger)

    if (local_dir / rel).is_file() is False:
        raise EntranceNotFound(entrance, _list_dir(local_dir / "bin"))
    return StagingResult(
        work_dir=work_dir,
        entrance=f"{MEMFS_ROOT}/{_LOCAL}/{rel}",
        chdir_at_startup=None,
    )


def _relative_to_root(path: pathlib.Path, root: pathlib.Path) -> str | None:
    """Express an absolute ``path`` relative to ``root`` in POSIX form.

    :returns: The relative path, or ``None`` when ``path`` lies outside ``root``.
    """

    root = root.resolve()
    if path.is_relative_to(root) is False:
        return None
    return path.relative_to(root).as_posix()


def _strip_vcs_and_caches(local_dir: pathlib.Path, *, logger: logging.Logger) -> None:
    """Remove ``.git`` and Bundler download caches from a staged copy."""

    git_dir: pathlib.Path = local_dir / ".git"
    if git_dir.exists() is True:
        logger.info(f"rubyc: removing {git_dir}")
        shutil.rmtree(git_dir)

    for cache in sorted(local_dir.glob("vendor/bundle/ruby/*/cache")):
        if cache.is_dir() is True:
            logger.info(f"rubyc: removing {cache}")
            shutil.rmtree(cache)


def _list_dir(path: pathlib.Path) -> list[str]:
    """List entry names of ``path``, or nothing when it is not a directory."""

    if path.is_dir() is False:
        return []
    return sorted(child.name for child in path.iterdir())


def _copy_project(
    *,
    src: pathlib.Path,
    dst: pathlib.Path,
    excludes: set[pathlib.Path],
    logger: logging.Logger,
) -> CopyStats:
    """Copy a project tree, preserving symlinks and file metadata.

    :param src: Source directory.
    :param dst: Destination directory (created).
    :param excludes: Absolute paths that are never copied.
    :param logger: Logger for progress output.
    :returns: Copy statistics.
    """

    files_copied: int = 0
    bytes_copied: int = 0

    logger.info(f"rubyc: copying {src} -> {dst}")
    dst.mkdir(parents=True, exist_ok=True)

    for root_str, dirs, files in os.walk(src, topdown=True):
        root_path: pathlib.Path = pathlib.Path(root_str)
        rel_root: pathlib.Path = root_path.relative_to(src)
        out_dir: pathlib.Path = dst / rel_root
        out_dir.mkdir(parents=True, exist_ok=True)

        keep_dirs: list[str] = []
        for d in sorted(dirs):
            src_dir: pathlib.Path = root_path / d
            if src_dir in excludes:
                continue
            if src_dir.is_symlink() is True:
                # os.walk does not descend into directory symlinks; recreate the link.
                os.symlink(os.readlink(src_dir), out_dir / d, target_is_directory=True)
                files_copied += 1
                continue
            keep_dirs.append(d)
        dirs[:] = keep_dirs

        for name in sorted(files):
            src_path: pathlib.Path = root_path / name
            if src_path in excludes:
                continue
            shutil.copy2(src_path, out_dir / name, follow_symlinks=False)
            files_copied += 1
            try:
                bytes_copied += src_path.lstat().st_size
            except OSError:
                pass

    logger.info(f"rubyc: copied {files_copied} files ({bytes_copied / (1024 * 1024):.1f} MiB)")
    return CopyStats(files_copied=files_copied, bytes_copied=bytes_copied)
