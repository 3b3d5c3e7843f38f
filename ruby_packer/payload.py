"""Project payload classification.

A project root is exactly one of three shapes:

- :class:`GemPackage`: a single ``*.gemspec`` at the root; the gem is built
  and installed, and the entrance is one of its executables.
- :class:`BundledApp`: a single ``Gemfile`` at the root; the whole tree is
  deployed with Bundler.
- :class:`BareScript`: anything else; the tree is copied as is.
"""

from dataclasses import dataclass
import logging
import pathlib

from ruby_packer.errors import StagingError


@dataclass(frozen=True, slots=True)
class GemPackage:
    """Project built and installed as a gem.

    :ivar root: Project root.
    :ivar gemspec: The single gemspec at the root.
    """

    root: pathlib.Path
    gemspec: pathlib.Path


@dataclass(frozen=True, slots=True)
class BundledApp:
    """Project deployed with ``bundle install --deployment``.

    :ivar root: Project root.
    :ivar gemfile: The single Gemfile at the root.
    """

    root: pathlib.Path
    gemfile: pathlib.Path


@dataclass(frozen=True, slots=True)
class BareScript:
    """Plain project tree without a manifest.

    :ivar root: Project root.
    """

    root: pathlib.Path


Payload = GemPackage | BundledApp | BareScript


def classify_payload(root: pathlib.Path, *, logger: logging.Logger | None = None) -> Payload:
    """Classify a project root.

    Only reads the directory listing; nothing is created or removed.

    :param root: Project root directory.
    :param logger: Optional logger.
    :returns: The payload variant.
    :raises StagingError: If the root is not a directory or holds more than one
        manifest of the same kind.
    """

    if logger is None:
        logger = logging.getLogger("ruby_packer")

    if root.is_dir() is False:
        raise StagingError(f"Project root is not a directory: {root}")

    gemspecs: list[pathlib.Path] = sorted(p for p in root.glob("*.gemspec") if p.is_file() is True)
    # Bundler only reads "Gemfile"; case variants are checked for conflicts only.
    gemfile_variants: list[pathlib.Path] = sorted(
        p for p in root.iterdir() if p.name.lower() == "gemfile" and p.is_file() is True
    )
    gemfiles: list[pathlib.Path] = [p for p in gemfile_variants if p.name == "Gemfile"]

    if len(gemspecs) > 1:
        names: str = ", ".join(p.name for p in gemspecs)
        raise StagingError(f"Multiple gemspecs detected in {root}: {names}")
    if len(gemfile_variants) > 1:
        names2: str = ", ".join(p.name for p in gemfile_variants)
        raise StagingError(f"Multiple Gemfiles detected in {root}: {names2}")
    if len(gemfile_variants) == 1 and len(gemfiles) == 0:
        logger.warning(
            f"rubyc: ignoring {gemfile_variants[0].name}; Bundler only reads a file named Gemfile"
        )

    if len(gemspecs) == 1:
        if len(gemfiles) == 1:
            logger.warning(
                f"rubyc: both {gemspecs[0].name} and {gemfiles[0].name} found; packing as a gem"
            )
        logger.info(f"rubyc: detected a gemspec ({gemspecs[0].name})")
        return GemPackage(root=root, gemspec=gemspecs[0])

    if len(gemfiles) == 1:
        logger.info(f"rubyc: detected a Gemfile ({gemfiles[0].name})")
        return BundledApp(root=root, gemfile=gemfiles[0])

    logger.info("rubyc: no gemspec or Gemfile; packing the project tree as is")
    return BareScript(root=root)
