"""Executable builder.

This module drives the whole packing pipeline:

- It builds the static support libraries and stages the vendored interpreter.
- Pass 1 configures and builds the interpreter as is, which validates the
  toolchain and produces every object file.
- Between the passes, the object files that reference the embedded image are
  deleted, the application is staged and compressed, and the image plus its
  boot metadata are written as C sources into the interpreter tree.
- Pass 2 reruns make, which recompiles only the deleted objects and relinks.
  The resulting interpreter is copied to the output path.
"""

from dataclasses import dataclass
import enum
import logging
import os
import pathlib
import shlex
import shutil
import time

from ruby_packer.embed import HEADER_NAME, MEMFS_SOURCE_NAME, emit_embedded_sources
from ruby_packer.errors import ConfigurationError, PackerError
from ruby_packer.image import EmbeddedImage, compress_tree
from ruby_packer.makefiles import append_to_make_variable
from ruby_packer.options import PackagingOptions
from ruby_packer.payload import Payload, classify_payload
from ruby_packer.runner import ToolRunner
from ruby_packer.staging import StagingResult, prepare_work_dir, stage_payload
from ruby_packer.support import stage_support_libraries
from ruby_packer.versions import check_host_ruby_version


# Consumed by the interpreter sources conditionally compiled for packing.
BUILD_ENV: dict[str, str] = {"ENCLOSE_IO_USE_ORIGINAL_RUBY": "1"}

IMAGE_NAME: str = "enclose_io_memfs.squashfs"

_UNICODE_HDR_DIR: str = "./enc/unicode/9.0.0"

# Extensions that do not build statically with MSVC yet.
_UNSUPPORTED_WIN32_EXTS: tuple[str, ...] = (
    "dbm",
    "digest",
    "etc",
    "fiddle",
    "gdbm",
    "mathn",
    "openssl",
    "pty",
    "readline",
    "ripper",
    "socket",
    "win32",
    "win32ole",
)


class BuildState(enum.Enum):
    INIT = "init"
    STAGE_SUPPORT_LIBRARIES = "stage-support-libraries"
    PASS1_BUILD = "pass1-build"
    STAGE_APPLICATION = "stage-application"
    COMPRESS = "compress"
    EMBED = "embed"
    PASS2_BUILD = "pass2-build"
    FINALIZE = "finalize"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class BuildArtifactSet:
    """Interpreter build outputs that depend on the embedded image or header.

    :ivar paths: POSIX paths relative to the vendored interpreter tree.
    """

    paths: tuple[str, ...]

    @classmethod
    def for_platform(cls, *, windows: bool) -> "BuildArtifactSet":
        if windows is True:
            objects: tuple[str, ...] = (
                "dir.obj",
                "file.obj",
                "io.obj",
                "main.obj",
                "win32/file.obj",
                "win32/win32.obj",
                "ruby.exe",
            )
        else:
            objects = ("dir.o", "file.o", "io.o", "main.o", "ruby")
        return cls(paths=objects + (HEADER_NAME, MEMFS_SOURCE_NAME))

    def invalidate(self, ruby_dir: pathlib.Path, *, logger: logging.Logger) -> list[str]:
        """Delete every artifact in the set.

        :param ruby_dir: Vendored interpreter tree.
        :param logger: Logger for progress output.
        :returns: The paths that existed and were removed.
        """

        removed: list[str] = []
        for rel in self.paths:
            p: pathlib.Path = ruby_dir.joinpath(*rel.split("/"))
            if p.exists() is True:
                p.unlink()
                removed.append(rel)
        logger.info(f"rubyc: invalidated {len(removed)} build artifacts")
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"rubyc: invalidated={removed}")
        return removed


def stage_vendored_interpreter(
    options: PackagingOptions,
    *,
    logger: logging.Logger,
) -> pathlib.Path:
    """Copy the vendored interpreter into tmpdir and point it at the support libraries.

    Skipped when ``<tmpdir>/ruby`` already exists.

    :returns: The staged interpreter tree.
    :raises ConfigurationError: If the vendored interpreter is missing.
    :raises PatchError: If a makefile lacks the variable to extend.
    """

    target: pathlib.Path = options.vendor_ruby
    if target.exists() is False:
        src: pathlib.Path = options.source_root / "ruby"
        if src.is_dir() is False:
            raise ConfigurationError(f"Vendored interpreter not found at {src}")
        logger.info(f"rubyc: staging interpreter sources into {target}")

        # Patch a scratch copy so an unpatched tree never passes the existence check.
        partial: pathlib.Path = target.with_name(target.name + ".partial")
        if partial.exists() is True:
            shutil.rmtree(partial)
        shutil.copytree(src, partial, symlinks=True)
        append_to_make_variable(
            partial / "common.mk", variable="INCFLAGS", flags=options.cflags, logger=logger
        )
        if options.windows is True:
            append_to_make_variable(
                partial / "win32" / "Makefile.sub",
                variable="LDFLAGS",
                flags=options.ldflags,
                logger=logger,
            )
        partial.rename(target)
    else:
        logger.info(f"rubyc: interpreter sources already staged at {target}")

    if options.windows is True:
        for name in _UNSUPPORTED_WIN32_EXTS:
            ext_dir: pathlib.Path = target / "ext" / name
            if ext_dir.exists() is True:
                shutil.rmtree(ext_dir)
    return target


class InterpreterBuildCoordinator:
    """Two-pass interpreter build with the application embedded.

    :ivar options: Packaging options.
    :ivar state: Current :class:`BuildState`.
    :ivar payload: Classified payload, once known.
    :ivar staging: Staging result, once the application is staged.
    """

    def __init__(
        self,
        options: PackagingOptions,
        *,
        runner: ToolRunner,
        logger: logging.Logger,
    ) -> None:
        self.options: PackagingOptions = options
        self.runner: ToolRunner = runner
        self.logger: logging.Logger = logger
        self.state: BuildState = BuildState.INIT
        self.artifacts: BuildArtifactSet = BuildArtifactSet.for_platform(windows=options.windows)
        self.payload: Payload | None = None
        self.staging: StagingResult | None = None

    def _enter(self, state: BuildState) -> None:
        self.state = state
        self.logger.info(f"rubyc: == {state.value}")

    def run(self) -> pathlib.Path:
        """Run every stage in order.

        :returns: The output executable path.
        :raises PackerError: On the first failure; :attr:`state` is then ``ABORTED``.
        """

        try:
            self._enter(BuildState.INIT)
            self._init()

            self._enter(BuildState.STAGE_SUPPORT_LIBRARIES)
            stage_support_libraries(options=self.options, runner=self.runner, logger=self.logger)
            stage_vendored_interpreter(self.options, logger=self.logger)

            self._enter(BuildState.PASS1_BUILD)
            self._pass1()

            self._enter(BuildState.STAGE_APPLICATION)
            self.artifacts.invalidate(self.options.vendor_ruby, logger=self.logger)
            staging: StagingResult | None = self._stage_application()

            self._enter(BuildState.COMPRESS)
            image: EmbeddedImage = compress_tree(
                work_dir=self.options.work_dir,
                image_path=self.options.vendor_ruby / IMAGE_NAME,
                runner=self.runner,
                logger=self.logger,
            )

            self._enter(BuildState.EMBED)
            emit_embedded_sources(
                image=image,
                entrance=staging.entrance if staging is not None else None,
                chdir_at_startup=staging.chdir_at_startup if staging is not None else None,
                ruby_dir=self.options.vendor_ruby,
                logger=self.logger,
            )

            self._enter(BuildState.PASS2_BUILD)
            self._pass2()

            self._enter(BuildState.FINALIZE)
            return self._finalize()
        except BaseException:
            self.state = BuildState.ABORTED
            raise

    def _init(self) -> None:
        options: PackagingOptions = self.options
        if options.entrance is not None:
            if options.root is None:
                raise ConfigurationError("An entrance requires a project root.")
            # Classification only reads the root, so manifest conflicts are
            # reported before any tool runs or any directory is touched.
            self.payload = classify_payload(options.root, logger=self.logger)

        check_host_ruby_version(source_root=options.source_root, runner=self.runner, logger=self.logger)

        if options.clean is True and options.tmpdir.exists() is True:
            self.logger.info(f"rubyc: cleaning {options.tmpdir}")
            shutil.rmtree(options.tmpdir)
        options.tmpdir.mkdir(parents=True, exist_ok=True)

    def _restore_pristine_sources(self) -> None:
        """Put back the placeholder header and image source shipped with the interpreter."""

        ruby_dir: pathlib.Path = self.options.vendor_ruby
        pristine: pathlib.Path = self.options.source_root / "ruby"
        for rel in (HEADER_NAME, MEMFS_SOURCE_NAME):
            dst: pathlib.Path = ruby_dir / rel
            dst.unlink(missing_ok=True)
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(pristine / rel, dst)

    def _pass1(self) -> None:
        options: PackagingOptions = self.options
        ruby_dir: pathlib.Path = options.vendor_ruby
        prefix: str = str(ruby_dir / "build")
        t0: float = time.perf_counter()

        self._restore_pristine_sources()

        if options.windows is True:
            self.runner.run(
                [
                    "cmd",
                    "/c",
                    "call",
                    "win32\\configure.bat",
                    f"--prefix={prefix}",
                    "--enable-bundled-libyaml",
                    "--enable-debug-env",
                    "--disable-install-doc",
                    "--with-static-linked-ext",
                ],
                cwd=ruby_dir,
                env=BUILD_ENV,
            )
            self._nmake_pass1()
        else:
            configure_env: dict[str, str] = dict(BUILD_ENV)
            configure_env["CFLAGS"] = options.cflags
            configure_env["LDFLAGS"] = options.ldflags
            self.runner.run(
                [
                    "./configure",
                    f"--prefix={prefix}",
                    "--enable-bundled-libyaml",
                    "--without-gmp",
                    "--disable-dtrace",
                    "--enable-debug-env",
                    "--with-sitearchdir=no",
                    "--with-vendordir=no",
                    "--disable-install-rdoc",
                    "--with-static-linked-ext",
                ],
                cwd=ruby_dir,
                env=configure_env,
            )
            self.runner.run(["make", *shlex.split(options.make_args)], cwd=ruby_dir, env=BUILD_ENV)
            self.runner.run(["make", "install"], cwd=ruby_dir, env=BUILD_ENV)

        t1: float = time.perf_counter()
        self.logger.info(f"rubyc: pass 1 finished in {t1 - t0:.2f}s")

    def _nmake_pass1(self) -> None:
        ruby_dir: pathlib.Path = self.options.vendor_ruby
        nmake_args: list[str] = shlex.split(self.options.nmake_args)
        miniruby: str = ".\\miniruby.exe -I./lib -I. "

        # The first run stops at the encoding libraries, which need miniruby;
        # its failure is expected.
        self.runner.run(["nmake", *nmake_args], cwd=ruby_dir, check=False)
        for lib in ("libenc", "libtrans"):
            self.runner.run(
                [
                    "nmake",
                    *nmake_args,
                    "-f",
                    "enc.mk",
                    "V=0",
                    f"UNICODE_HDR_DIR={_UNICODE_HDR_DIR}",
                    f"RUBY={miniruby}",
                    f"MINIRUBY={miniruby}",
                    "-l",
                    lib,
                ],
                cwd=ruby_dir,
                env=BUILD_ENV,
            )
        self.runner.run(["nmake", *nmake_args], cwd=ruby_dir, env=BUILD_ENV)
        self.runner.run(["nmake", "install"], cwd=ruby_dir, env=BUILD_ENV)

    def _stage_application(self) -> StagingResult | None:
        if self.options.entrance is None:
            prepare_work_dir(self.options)
            self.logger.info("rubyc: no entrance; embedding an empty image")
            return None

        payload: Payload | None = self.payload
        if payload is None:
            raise PackerError("Internal error: payload was not classified during init.")
        self.staging = stage_payload(payload, options=self.options, runner=self.runner, logger=self.logger)
        return self.staging

    def _pass2(self) -> None:
        options: PackagingOptions = self.options
        t0: float = time.perf_counter()
        if options.windows is True:
            cmd: list[str] = ["nmake", *shlex.split(options.nmake_args)]
        else:
            cmd = ["make", *shlex.split(options.make_args)]
        self.runner.run(cmd, cwd=options.vendor_ruby, env=BUILD_ENV)
        t1: float = time.perf_counter()
        self.logger.info(f"rubyc: pass 2 finished in {t1 - t0:.2f}s")

    def _finalize(self) -> pathlib.Path:
        options: PackagingOptions = self.options
        exe_name: str = "ruby.exe" if options.windows is True else "ruby"
        built: pathlib.Path = options.vendor_ruby / exe_name
        if built.is_file() is False:
            raise PackerError(f"Pass 2 did not produce {built}")

        options.output.parent.mkdir(parents=True, exist_ok=True)
        tmp_out: pathlib.Path = options.output.with_name(options.output.name + ".tmp")
        shutil.copy2(built, tmp_out)
        os.replace(tmp_out, options.output)
        size: int = options.output.stat().st_size
        self.logger.info(f"rubyc: wrote {options.output} ({size / (1024 * 1024):.1f} MiB)")
        return options.output


def build_executable(
    options: PackagingOptions,
    *,
    runner: ToolRunner | None = None,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Build a single-file executable for ``options``.

    :param options: Resolved packaging options.
    :param runner: Command runner (defaults to :class:`ToolRunner`).
    :param logger: Logger for progress output.
    :returns: The output executable path.
    :raises PackerError: If any stage fails.
    """

    if logger is None:
        logger = logging.getLogger("ruby_packer")
    if runner is None:
        runner = ToolRunner(logger)

    if options.entrance is not None:
        logger.info(f"rubyc: entrance={options.entrance}")
        logger.info(f"rubyc: root={options.root}")
    else:
        logger.info("rubyc: no entrance given; a bare Ruby interpreter executable will be produced")
    logger.info(f"rubyc: output={options.output}")
    logger.info(f"rubyc: tmpdir={options.tmpdir}")

    t0: float = time.perf_counter()
    coordinator: InterpreterBuildCoordinator = InterpreterBuildCoordinator(
        options, runner=runner, logger=logger
    )
    output: pathlib.Path = coordinator.run()
    t1: float = time.perf_counter()
    logger.info(f"rubyc: done in {t1 - t0:.2f}s")
    return output
