"""Build-file overrides.

The interpreter's makefiles are not regenerated by ``configure`` for the
variables we extend, so the extra flags are appended directly to the first
declaration of the variable.
"""

import logging
import pathlib
import re

from ruby_packer.errors import PatchError


def append_to_make_variable(
    path: pathlib.Path,
    *,
    variable: str,
    flags: str,
    logger: logging.Logger | None = None,
) -> None:
    """Append ``flags`` to the first ``VARIABLE = ...`` line of a makefile.

    :param path: Makefile to patch in place.
    :param variable: Variable name, e.g. ``INCFLAGS``.
    :param flags: Flags to append.
    :param logger: Optional logger.
    :raises PatchError: If no declaration of ``variable`` exists.
    """

    decl_re: re.Pattern[str] = re.compile(rf"^{re.escape(variable)} = (.*)$")
    # newline="" keeps CRLF endings of the win32 makefiles intact.
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as f:
        text: str = f.read()
    lines: list[str] = text.splitlines(keepends=True)

    for i, line in enumerate(lines):
        body: str = line.rstrip("\r\n")
        m = decl_re.match(body)
        if m is None:
            continue
        ending: str = line[len(body) :]
        lines[i] = f"{variable} = {m.group(1)} {flags}{ending}"
        path.write_text("".join(lines), encoding="utf-8", errors="surrogateescape", newline="")
        if logger is not None:
            logger.info(f"rubyc: patched {variable} of {path}")
        return

    raise PatchError(path, variable)
