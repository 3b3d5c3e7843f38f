"""External command execution.

All toolchain invocations (bundle, gem, mksquashfs, configure, make, nmake)
go through :class:`ToolRunner` so that each command carries its own working
directory and environment overrides instead of relying on process-wide state.
"""

import logging
import os
import pathlib
import shutil
import subprocess

from ruby_packer.errors import ExternalToolError


class ToolRunner:
    """Run external commands synchronously and capture their combined output.

    :ivar logger: Logger for progress output.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        if logger is None:
            logger = logging.getLogger("ruby_packer")
        self.logger: logging.Logger = logger

    def run(
        self,
        cmd: list[str],
        *,
        cwd: pathlib.Path,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> str:
        """Run ``cmd`` in ``cwd`` and wait for it to exit.

        :param cmd: Program and arguments.
        :param cwd: Working directory for the command.
        :param env: Variables layered over the current environment.
        :param check: Raise on a nonzero exit status.
        :returns: Combined stdout/stderr text.
        :raises ExternalToolError: If the program cannot be started, or exits
            nonzero while ``check`` is set.
        """

        full_env: dict[str, str] = dict(os.environ)
        if env is not None:
            full_env.update(env)

        argv: list[str] = _resolve_program(cmd, path=full_env.get("PATH"))

        self.logger.info(f"rubyc: -> {' '.join(cmd)}")
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"rubyc: cwd={cwd}")
            if env is not None:
                self.logger.debug(f"rubyc: env overrides={sorted(env)}")

        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd),
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                check=False,
            )
        except OSError as e:
            raise ExternalToolError(cmd, None, str(e)) from e

        output: str = proc.stdout.decode("utf-8", errors="replace")
        if proc.returncode != 0 and check is True:
            raise ExternalToolError(cmd, proc.returncode, output)
        if proc.returncode != 0:
            self.logger.warning(f"rubyc: ignoring exit={proc.returncode} of {' '.join(cmd)}")
        if self.logger.isEnabledFor(logging.DEBUG) is True and len(output) > 0:
            self.logger.debug(output.rstrip("\n"))
        return output


def _resolve_program(cmd: list[str], *, path: str | None) -> list[str]:
    """Look up a bare program name on ``PATH``.

    ``shutil.which`` honours ``PATHEXT``, which is how ``bundle.bat`` and
    ``gem.cmd`` are found on Windows. Names with a directory part, and names
    that cannot be found, are passed through unchanged.
    """

    program: str = cmd[0]
    if os.path.dirname(program) != "":
        return list(cmd)
    found: str | None = shutil.which(program, path=path)
    if found is None:
        return list(cmd)
    return [found, *cmd[1:]]
