"""C sources that carry the image and its boot metadata into the interpreter.

Two files are generated inside the vendored interpreter tree:

- ``enclose_io_memfs.c`` defines ``enclose_io_memfs``, a ``uint8_t`` array
  holding the image bytes.
- ``include/enclose_io.h`` defines ``ENCLOSE_IO_ENTRANCE`` and, optionally,
  ``ENCLOSE_IO_CHDIR_AT_STARTUP`` for the interpreter's boot shim.

Keep both in sync with the libsquash sample ``enclose_io_memfs.c`` and
``enclose_io.h``.
"""

from dataclasses import dataclass
from collections.abc import Iterator
import logging
import pathlib

from ruby_packer.errors import StagingError
from ruby_packer.image import EmbeddedImage


MEMFS_SOURCE_NAME: str = "enclose_io_memfs.c"
HEADER_NAME: str = "include/enclose_io.h"

# Values per line in the generated array.
_CHUNK: int = 101

_HEADER_GUARD: str = "ENCLOSE_IO_H_999BC1DA"
_HEADER_INCLUDES: tuple[str, ...] = (
    "enclose_io_prelude.h",
    "enclose_io_common.h",
    "enclose_io_win32.h",
    "enclose_io_unix.h",
)


@dataclass(frozen=True, slots=True)
class EmbeddedSources:
    """Paths of the generated sources.

    :ivar memfs_source: The byte-array translation unit.
    :ivar header: The boot metadata header.
    """

    memfs_source: pathlib.Path
    header: pathlib.Path


def iter_memfs_source(data: bytes) -> Iterator[str]:
    """Yield the byte-array source text in pieces.

    :param data: Image bytes; must not be empty (zero-length arrays are not C).
    :raises StagingError: If ``data`` is empty.
    """

    if len(data) == 0:
        raise StagingError("Cannot embed an empty image.")

    yield "#include <stdint.h>\n"
    yield "#include <stddef.h>\n"
    yield "\n"
    yield f"const uint8_t enclose_io_memfs[{len(data)}] = {{\n"
    n: int = len(data)
    for i in range(0, n, _CHUNK):
        line: str = ",".join(str(b) for b in data[i : i + _CHUNK])
        if i + _CHUNK < n:
            yield line + ",\n"
        else:
            yield line + "\n"
    yield "};\n"


def render_memfs_source(data: bytes) -> str:
    """Render the byte-array source as one string."""

    return "".join(iter_memfs_source(data))


def c_string_literal(value: str) -> str:
    """Quote ``value`` as a C string literal.

    Non-ASCII characters are emitted as octal escapes of their UTF-8 bytes.
    """

    out: list[str] = ['"']
    for byte in value.encode("utf-8"):
        ch: str = chr(byte)
        if ch == "\\":
            out.append("\\\\")
        elif ch == '"':
            out.append('\\"')
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\t":
            out.append("\\t")
        elif byte < 32 or byte > 126:
            out.append(f"\\{byte:03o}")
        else:
            out.append(ch)
    out.append('"')
    return "".join(out)


def render_header(*, entrance: str | None, chdir_at_startup: str | None) -> str:
    """Render ``enclose_io.h``.

    :param entrance: Entrance path inside the image, or ``None`` for a bare interpreter.
    :param chdir_at_startup: Startup working directory inside the image, if any.
    :returns: Header text.
    """

    lines: list[str] = [
        f"#ifndef {_HEADER_GUARD}",
        f"#define {_HEADER_GUARD}",
        "",
    ]
    for inc in _HEADER_INCLUDES:
        lines.append(f'#include "{inc}"')
    lines.append("")
    if chdir_at_startup is not None:
        lines.append(f"#define ENCLOSE_IO_CHDIR_AT_STARTUP {c_string_literal(chdir_at_startup)}")
    if entrance is not None:
        lines.append(f"#define ENCLOSE_IO_ENTRANCE {c_string_literal(entrance)}")
    lines.append("#endif")
    lines.append("")
    return "\n".join(lines) + "\n"


def emit_embedded_sources(
    *,
    image: EmbeddedImage,
    entrance: str | None,
    chdir_at_startup: str | None,
    ruby_dir: pathlib.Path,
    logger: logging.Logger,
) -> EmbeddedSources:
    """Write the byte-array source and header into the interpreter tree.

    :param image: Image to embed.
    :param entrance: Entrance path inside the image.
    :param chdir_at_startup: Startup working directory inside the image.
    :param ruby_dir: Vendored interpreter tree.
    :param logger: Logger for progress output.
    :returns: Paths of the written files.
    """

    memfs_source: pathlib.Path = ruby_dir / MEMFS_SOURCE_NAME
    header: pathlib.Path = ruby_dir / HEADER_NAME

    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"rubyc: writing {memfs_source} ({image.length} bytes)")
    with open(memfs_source, "w", encoding="ascii", newline="\n") as f:
        for piece in iter_memfs_source(image.data):
            f.write(piece)

    header.parent.mkdir(parents=True, exist_ok=True)
    header.write_text(
        render_header(entrance=entrance, chdir_at_startup=chdir_at_startup),
        encoding="utf-8",
        newline="\n",
    )
    logger.info(f"rubyc: wrote {memfs_source.name} and {HEADER_NAME}")
    return EmbeddedSources(memfs_source=memfs_source, header=header)
