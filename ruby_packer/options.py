"""Packaging options.

Options are resolved once from user input by :func:`resolve_packaging_options`
and then passed explicitly, read-only, to every stage of the pipeline.
Resolution never touches the filesystem beyond ``stat`` calls, so an invalid
configuration is rejected before anything is created or deleted.
"""

from dataclasses import dataclass
import pathlib
import sys
import tempfile

from ruby_packer.errors import ConfigurationError
from ruby_packer.flags import CompileFlags, prepare_flags


_DEFAULT_MAKE_ARGS: str = "-j4"

# Markers of a project root when walking up from the entrance.
_ROOT_MARKERS: tuple[str, ...] = ("Gemfile", ".git")


@dataclass(frozen=True, slots=True)
class PackagingOptions:
    """Resolved, immutable packaging configuration.

    :ivar entrance: Entrance as supplied by the user, or ``None`` to build a
        bare interpreter.
    :ivar entrance_path: The entrance made absolute against the working directory
        it was given in, or ``None``. Path-like entrances are resolved from this;
        gem and binstub lookups use the raw :attr:`entrance`.
    :ivar output: Absolute path of the executable to produce.
    :ivar root: Absolute project root, or ``None`` when there is no entrance.
    :ivar tmpdir: Absolute working directory for all intermediate state.
    :ivar source_root: Directory holding the vendored ``ruby/`` and ``vendor/`` trees.
    :ivar cflags: Compiler flags for the interpreter build.
    :ivar ldflags: Linker flags for the interpreter build.
    :ivar debug: Build an unoptimised interpreter.
    :ivar clean: Wipe ``tmpdir`` before building.
    :ivar make_args: Extra arguments passed to ``make`` (e.g. ``-j4``).
    :ivar nmake_args: Extra arguments passed to ``nmake``.
    :ivar windows: Target the Windows/MSVC toolchain.
    """

    entrance: str | None
    entrance_path: pathlib.Path | None
    output: pathlib.Path
    root: pathlib.Path | None
    tmpdir: pathlib.Path
    source_root: pathlib.Path
    cflags: str
    ldflags: str
    debug: bool
    clean: bool
    make_args: str
    nmake_args: str
    windows: bool

    @property
    def vendor_ruby(self) -> pathlib.Path:
        """Staged copy of the vendored interpreter sources."""

        return self.tmpdir / "ruby"

    @property
    def work_dir(self) -> pathlib.Path:
        """Directory whose contents become the embedded image."""

        return self.tmpdir / "__work_dir__"


def default_source_root() -> pathlib.Path:
    """Return the checkout that ships ``ruby/`` and ``vendor/`` next to this package."""

    return pathlib.Path(__file__).resolve().parent.parent


def resolve_packaging_options(
    *,
    entrance: str | None,
    output: pathlib.Path | None = None,
    root: pathlib.Path | None = None,
    tmpdir: pathlib.Path | None = None,
    source_root: pathlib.Path | None = None,
    make_args: str | None = None,
    nmake_args: str | None = None,
    debug: bool = False,
    clean: bool = False,
    windows: bool | None = None,
    cwd: pathlib.Path | None = None,
) -> PackagingOptions:
    """Validate user input and build :class:`PackagingOptions`.

    :param entrance: Entrance path or executable name; ``None`` for a bare interpreter.
    :param output: Output executable path (defaults to ``a.out`` / ``a.exe``).
    :param root: Project root; detected from the entrance when omitted.
    :param tmpdir: Working directory (defaults to ``<system tmp>/rubyc``).
    :param source_root: Vendored sources checkout (defaults to this package's checkout).
    :param make_args: Arguments for ``make``.
    :param nmake_args: Arguments for ``nmake``.
    :param debug: Debug build.
    :param clean: Wipe tmpdir before building.
    :param windows: Target Windows; defaults to the host platform.
    :param cwd: Base for relative paths; defaults to the process working directory.
    :returns: Resolved options.
    :raises ConfigurationError: If tmpdir is the project root or lies inside it.
    """

    if cwd is None:
        cwd = pathlib.Path.cwd()
    if windows is None:
        windows = sys.platform == "win32"

    if entrance is not None and len(entrance.strip()) == 0:
        raise ConfigurationError("Entrance must not be empty.")

    if output is None:
        output = pathlib.Path("a.exe" if windows is True else "a.out")
    output_abs: pathlib.Path = _absolute(output, cwd)

    entrance_abs: pathlib.Path | None = None
    if entrance is not None:
        entrance_abs = _absolute(pathlib.Path(entrance), cwd)

    root_abs: pathlib.Path | None = None
    if root is not None:
        root_abs = _absolute(root, cwd)
        if root_abs.is_dir() is False:
            raise ConfigurationError(f"Project root {root_abs} is not a directory.")
    elif entrance_abs is not None:
        root_abs = detect_project_root(entrance_abs, cwd=cwd)

    if tmpdir is None:
        tmpdir = pathlib.Path(tempfile.gettempdir()) / "rubyc"
    tmpdir_abs: pathlib.Path = _absolute(tmpdir, cwd)

    if root_abs is not None and tmpdir_abs.is_relative_to(root_abs) is True:
        raise ConfigurationError(f"Tempdir {tmpdir_abs} cannot reside inside {root_abs}.")

    if source_root is None:
        source_root = default_source_root()

    flags: CompileFlags = prepare_flags(tmpdir=tmpdir_abs, debug=debug, windows=windows)

    return PackagingOptions(
        entrance=entrance,
        entrance_path=entrance_abs,
        output=output_abs,
        root=root_abs,
        tmpdir=tmpdir_abs,
        source_root=_absolute(source_root, cwd),
        cflags=flags.cflags,
        ldflags=flags.ldflags,
        debug=debug,
        clean=clean,
        make_args=make_args if make_args is not None else _DEFAULT_MAKE_ARGS,
        nmake_args=nmake_args if nmake_args is not None else "",
        windows=windows,
    )


def detect_project_root(entrance_path: pathlib.Path, *, cwd: pathlib.Path) -> pathlib.Path:
    """Walk up from the entrance looking for a ``Gemfile`` or ``.git``.

    Falls back to ``cwd`` when the filesystem root is reached without a match.

    :param entrance_path: Absolute entrance path (need not exist).
    :param cwd: Fallback root.
    :returns: Detected project root.
    """

    for candidate in entrance_path.parents:
        if candidate.parent == candidate:
            break
        for marker in _ROOT_MARKERS:
            if (candidate / marker).exists() is True:
                return candidate
    return cwd


def _absolute(path: pathlib.Path, cwd: pathlib.Path) -> pathlib.Path:
    """Make ``path`` absolute against ``cwd`` and normalise ``..`` segments."""

    p: pathlib.Path = path.expanduser()
    if p.is_absolute() is False:
        p = cwd / p
    return p.resolve()
