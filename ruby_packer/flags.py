"""Compiler and linker flags pointing the interpreter build at the support libraries."""

from dataclasses import dataclass
import pathlib


@dataclass(frozen=True, slots=True)
class CompileFlags:
    """Flags handed to the interpreter build.

    :ivar cflags: Optimisation and include flags (``CFLAGS`` / ``INCFLAGS``).
    :ivar ldflags: Library search paths and static archives (``LDFLAGS``).
    """

    cflags: str
    ldflags: str


def _q(path: pathlib.Path) -> str:
    """Quote a path for a make variable."""

    s: str = str(path)
    if " " in s:
        return f'"{s}"'
    return s


def prepare_flags(*, tmpdir: pathlib.Path, debug: bool, windows: bool) -> CompileFlags:
    """Derive compile flags for the given tmpdir layout.

    :param tmpdir: Working directory holding the staged support libraries.
    :param debug: Build an unoptimised interpreter with debug info.
    :param windows: Target the MSVC toolchain.
    :returns: Compile flags.
    """

    cflags: list[str] = []
    ldflags: list[str] = []

    if windows is True:
        if debug is True:
            cflags += ["/DEBUG:FULL", "/Od", "-Zi"]
        else:
            cflags += ["/Ox"]
    else:
        if debug is True:
            cflags += ["-g", "-O0", "-pipe"]
        else:
            cflags += [
                "-O3",
                "-fno-fast-math",
                "-ggdb3",
                "-Os",
                "-fdata-sections",
                "-ffunction-sections",
                "-pipe",
            ]

    zlib: pathlib.Path = tmpdir / "zlib"
    if windows is True:
        # MSVC wants backslashes in -libpath.
        ldflags += [f"-libpath:{_q(zlib)}".replace("/", "\\"), _q(zlib / "zlib.lib")]
        cflags += [f"-I{_q(zlib)}"]
        return CompileFlags(cflags=" ".join(cflags), ldflags=" ".join(ldflags))

    openssl: pathlib.Path = tmpdir / "openssl"
    gdbm_build: pathlib.Path = tmpdir / "gdbm" / "build"

    ldflags += [f"-L{_q(zlib)}", _q(zlib / "libz.a")]
    cflags += [f"-I{_q(zlib)}"]
    ldflags += [f"-L{_q(openssl)}", _q(openssl / "libcrypto.a"), _q(openssl / "libssl.a")]
    cflags += [f"-I{_q(openssl / 'include')}"]
    ldflags += [f"-L{_q(gdbm_build / 'lib')}", _q(gdbm_build / "lib" / "libgdbm.a")]
    cflags += [f"-I{_q(gdbm_build / 'include')}"]

    return CompileFlags(cflags=" ".join(cflags), ldflags=" ".join(ldflags))
