"""Exception types raised by the packing pipeline.

Every error aborts the whole run; nothing here is recovered internally.
"""

import pathlib


class PackerError(RuntimeError):
    """Base class for all ruby-packer failures."""


class ConfigurationError(PackerError):
    """Raised for invalid options or an unusable host environment."""


class StagingError(PackerError):
    """Raised when the project payload cannot be classified or staged."""


class EntranceNotFound(PackerError):
    """Raised when the entrance cannot be resolved inside the staged payload.

    :ivar entrance: The entrance as supplied by the user.
    :ivar candidates: Entrances that were discovered instead (sorted).
    """

    def __init__(self, entrance: str, candidates: list[str] | None = None) -> None:
        self.entrance: str = entrance
        self.candidates: list[str] = sorted(candidates) if candidates is not None else []
        msg: str = f"Cannot find entrance {entrance!r}"
        if len(self.candidates) > 0:
            msg += f", available entrances are {', '.join(self.candidates)}."
        else:
            msg += "."
        super().__init__(msg)


class ExternalToolError(PackerError):
    """Raised when an external command fails.

    :ivar cmd: The command that was run.
    :ivar returncode: Exit status, or ``None`` if the program could not be started.
    :ivar output: Combined stdout/stderr of the command.
    """

    def __init__(self, cmd: list[str], returncode: int | None, output: str) -> None:
        self.cmd: list[str] = list(cmd)
        self.returncode: int | None = returncode
        self.output: str = output
        joined: str = " ".join(cmd)
        if returncode is None:
            head: str = f"Failed to run {joined}"
        else:
            head = f"Command failed (exit={returncode}): {joined}"
        if len(output) > 0:
            super().__init__(f"{head}\n{output}")
        else:
            super().__init__(head)


class PatchError(PackerError):
    """Raised when a build file lacks the declaration a patch must extend."""

    def __init__(self, path: pathlib.Path, anchor: str) -> None:
        self.path: pathlib.Path = path
        self.anchor: str = anchor
        super().__init__(f"Failed to patch {anchor} of {path}: declaration not found")
