"""Static support libraries linked into the interpreter.

Each library is copied from ``<source_root>/vendor/<name>`` into
``<tmpdir>/<name>`` and built there. A library whose target directory already
exists is assumed to be built and is skipped; this is what lets an aborted
run be resumed without rebuilding everything. Use ``--clean-tmpdir`` to force
a rebuild.
"""

from collections.abc import Callable
from dataclasses import dataclass
import logging
import pathlib
import shlex
import shutil
import time

from ruby_packer.errors import ConfigurationError
from ruby_packer.options import PackagingOptions
from ruby_packer.runner import ToolRunner


_SHARED_PATTERNS: tuple[str, ...] = ("*.so", "*.so.*", "*.dylib", "*.dll")


@dataclass(frozen=True, slots=True)
class SupportLibrary:
    """A vendored library and how to build it.

    :ivar name: Directory name under ``vendor/`` and ``tmpdir``.
    :ivar commands: Build commands for the options' platform, or ``None`` when
        the platform is unsupported.
    """

    name: str
    commands: Callable[[pathlib.Path, PackagingOptions], list[list[str]] | None]


def _zlib_commands(target: pathlib.Path, options: PackagingOptions) -> list[list[str]] | None:
    if options.windows is True:
        return [["nmake", "/f", "win32\\Makefile.msc"]]
    return [
        ["./configure", "--static"],
        ["make", *shlex.split(options.make_args)],
    ]


def _openssl_commands(target: pathlib.Path, options: PackagingOptions) -> list[list[str]] | None:
    if options.windows is True:
        return None
    return [
        ["./config", "no-shared"],
        ["make", *shlex.split(options.make_args)],
    ]


def _gdbm_commands(target: pathlib.Path, options: PackagingOptions) -> list[list[str]] | None:
    if options.windows is True:
        return None
    return [
        [
            "./configure",
            "--enable-libgdbm-compat",
            "--disable-shared",
            "--enable-static",
            "--without-readline",
            f"--prefix={target / 'build'}",
        ],
        ["make", *shlex.split(options.make_args)],
        ["make", "install"],
    ]


SUPPORT_LIBRARIES: tuple[SupportLibrary, ...] = (
    SupportLibrary(name="zlib", commands=_zlib_commands),
    SupportLibrary(name="openssl", commands=_openssl_commands),
    SupportLibrary(name="gdbm", commands=_gdbm_commands),
)


def stage_support_library(
    library: SupportLibrary,
    *,
    options: PackagingOptions,
    runner: ToolRunner,
    logger: logging.Logger,
) -> bool:
    """Copy and build one support library unless it is already staged.

    :returns: ``True`` if the library was built by this call.
    :raises ConfigurationError: If the vendored sources are missing.
    :raises ExternalToolError: If a build command fails.
    """

    target: pathlib.Path = options.tmpdir / library.name
    if target.exists() is True:
        logger.info(f"rubyc: {library.name} already staged at {target}; skipping")
        return False

    commands: list[list[str]] | None = library.commands(target, options)
    if commands is None:
        logger.warning(f"rubyc: {library.name} is not supported on this platform; skipping")
        return False

    src: pathlib.Path = options.source_root / "vendor" / library.name
    if src.is_dir() is False:
        raise ConfigurationError(f"Vendored sources for {library.name} not found at {src}")

    logger.info(f"rubyc: building {library.name}")
    t0: float = time.perf_counter()
    shutil.copytree(src, target, symlinks=True)
    for cmd in commands:
        runner.run(cmd, cwd=target)
    _remove_shared_libraries(target, logger=logger)
    t1: float = time.perf_counter()
    logger.info(f"rubyc: built {library.name} in {t1 - t0:.2f}s")
    return True


def stage_support_libraries(
    *,
    options: PackagingOptions,
    runner: ToolRunner,
    logger: logging.Logger,
    libraries: tuple[SupportLibrary, ...] = SUPPORT_LIBRARIES,
) -> list[str]:
    """Stage every support library in order.

    :returns: Names of the libraries built by this call.
    """

    built: list[str] = []
    for library in libraries:
        if stage_support_library(library, options=options, runner=runner, logger=logger) is True:
            built.append(library.name)
    return built


def _remove_shared_libraries(target: pathlib.Path, *, logger: logging.Logger) -> None:
    """Delete dynamic libraries so the interpreter links the static archives."""

    for lib_dir in (target, target / "build" / "lib"):
        if lib_dir.is_dir() is False:
            continue
        for pattern in _SHARED_PATTERNS:
            for p in sorted(lib_dir.glob(pattern)):
                if p.is_file() is True or p.is_symlink() is True:
                    logger.info(f"rubyc: removing shared library {p}")
                    p.unlink()
