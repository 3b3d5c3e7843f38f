"""Command line interface for ruby-packer."""

import argparse
import logging
import pathlib
import sys

from ruby_packer import __version__
from ruby_packer.builder import build_executable
from ruby_packer.errors import PackerError
from ruby_packer.options import PackagingOptions, resolve_packaging_options


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the ruby-packer logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("ruby_packer")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def build_parser() -> argparse.ArgumentParser:
    """Build the ``rubyc`` argument parser."""

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="rubyc",
        description=(
            "Compile a Ruby application and its dependencies into a single executable. "
            "Without ENTRANCE, a bare Ruby interpreter executable is produced."
        ),
    )
    parser.add_argument(
        "entrance",
        nargs="?",
        default=None,
        help="Entrance file of the application, or the name of a gem executable.",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        default=None,
        help="Path of the output executable (default: a.out, or a.exe on Windows).",
    )
    parser.add_argument(
        "-r",
        "--root",
        type=pathlib.Path,
        default=None,
        help="Project root (default: nearest parent of ENTRANCE with a Gemfile or .git).",
    )
    parser.add_argument(
        "-d",
        "--tmpdir",
        type=pathlib.Path,
        default=None,
        help="Directory for intermediate files (default: <system tmp>/rubyc). "
        "Must not be inside the project root.",
    )
    parser.add_argument(
        "--make-args",
        type=str,
        default=None,
        help="Arguments passed to make, e.g. --make-args=-j8 (default: -j4).",
    )
    parser.add_argument(
        "--nmake-args",
        type=str,
        default=None,
        help="Arguments passed to nmake on Windows, e.g. --nmake-args=/NOLOGO.",
    )
    parser.add_argument(
        "-c",
        "--clean-tmpdir",
        action="store_true",
        help="Remove the tmpdir before building, forcing all support libraries to be rebuilt.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Build an unoptimised interpreter with debug symbols.",
    )
    parser.add_argument(
        "--source-root",
        type=pathlib.Path,
        default=None,
        help="Checkout containing the vendored ruby/ and vendor/ source trees.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the rubyc CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    ns = build_parser().parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        options: PackagingOptions = resolve_packaging_options(
            entrance=ns.entrance,
            output=ns.output,
            root=ns.root,
            tmpdir=ns.tmpdir,
            source_root=ns.source_root,
            make_args=ns.make_args,
            nmake_args=ns.nmake_args,
            debug=ns.debug,
            clean=ns.clean_tmpdir,
        )
        build_executable(options, logger=logger)
    except PackerError as e:
        logger.error(f"rubyc: error: {e}")
        return 1
    return 0
