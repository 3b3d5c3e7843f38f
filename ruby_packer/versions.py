"""Version checks for the vendored and host Ruby interpreters."""

import logging
import pathlib
import re

from ruby_packer.errors import ConfigurationError
from ruby_packer.runner import ToolRunner


_RUBY_VERSION_RE: re.Pattern[str] = re.compile(r'RUBY_VERSION\s+"([^"]+)"\s*$', re.MULTILINE)


def peek_ruby_version(source_root: pathlib.Path) -> str:
    """Read ``RUBY_VERSION`` from the vendored ``ruby/version.h``.

    :param source_root: Checkout holding the vendored ``ruby/`` tree.
    :returns: Version string such as ``2.4.1``.
    :raises ConfigurationError: If the header is missing or has no version.
    """

    version_h: pathlib.Path = source_root / "ruby" / "version.h"
    try:
        text: str = version_h.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read {version_h}: {e}") from e

    m = _RUBY_VERSION_RE.search(text)
    if m is None:
        raise ConfigurationError(f"Cannot peek RUBY_VERSION from {version_h}")
    return m.group(1)


def check_host_ruby_version(
    *,
    source_root: pathlib.Path,
    runner: ToolRunner,
    logger: logging.Logger,
) -> str:
    """Ensure the ``ruby`` on PATH matches the vendored interpreter version.

    Bundler and RubyGems run on the host interpreter during staging, so a
    mismatch would install gems built for the wrong ABI.

    :returns: The matching version string.
    :raises ConfigurationError: On a version mismatch.
    """

    version: str = peek_ruby_version(source_root)
    expectation: str = f"ruby {version}"
    got: str = runner.run(["ruby", "-v"], cwd=source_root)
    if expectation not in got:
        raise ConfigurationError(
            "Please make sure to have installed the correct version of ruby in your environment\n"
            f"Expecting {expectation}; yet got {got.strip()}"
        )
    logger.info(f"rubyc: host interpreter matches {expectation}")
    return version
