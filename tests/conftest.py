import logging
import pathlib
from collections.abc import Callable

import pytest

from ruby_packer.errors import ExternalToolError
from ruby_packer.options import PackagingOptions, resolve_packaging_options
from ruby_packer.runner import ToolRunner


Handler = Callable[[list[str], pathlib.Path], str | None]


class FakeRunner(ToolRunner):
    """Records commands instead of running them.

    Handlers keyed by a command prefix simulate each tool's side effects;
    unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        super().__init__(logging.getLogger("ruby_packer.tests"))
        self.calls: list[tuple[list[str], pathlib.Path, dict[str, str] | None]] = []
        self.handlers: list[tuple[tuple[str, ...], Handler]] = []
        self.failures: set[tuple[str, ...]] = set()

    def on(self, *prefix: str) -> Callable[[Handler], Handler]:
        def register(fn: Handler) -> Handler:
            self.handlers.append((prefix, fn))
            return fn

        return register

    def fail(self, *prefix: str) -> None:
        self.failures.add(prefix)

    def commands(self) -> list[list[str]]:
        return [cmd for cmd, _cwd, _env in self.calls]

    def run(
        self,
        cmd: list[str],
        *,
        cwd: pathlib.Path,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> str:
        self.calls.append((list(cmd), cwd, env))
        for prefix in self.failures:
            if tuple(cmd[: len(prefix)]) == prefix:
                if check is True:
                    raise ExternalToolError(cmd, 2, f"{cmd[0]}: simulated failure")
                return ""
        # Longest prefix wins.
        for prefix, fn in sorted(self.handlers, key=lambda h: -len(h[0])):
            if tuple(cmd[: len(prefix)]) == prefix:
                out: str | None = fn(cmd, cwd)
                return out if out is not None else ""
        return ""


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("ruby_packer.tests")


def write_file(path: pathlib.Path, text: str = "") -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def source_root(tmp_path: pathlib.Path) -> pathlib.Path:
    """A minimal vendored checkout: ruby/ plus vendor/{zlib,openssl,gdbm}."""

    root: pathlib.Path = tmp_path / "checkout"
    write_file(root / "ruby" / "version.h", '#define RUBY_VERSION "2.4.1"\n')
    write_file(root / "ruby" / "common.mk", "V = 0\nINCFLAGS = -I. -I$(arch_hdrdir)\nCC = cc\n")
    write_file(root / "ruby" / "win32" / "Makefile.sub", "LDFLAGS = -link\n")
    write_file(root / "ruby" / "include" / "enclose_io.h", "/* pristine */\n")
    write_file(root / "ruby" / "enclose_io_memfs.c", "/* pristine */\n")
    for name in ("zlib", "openssl", "gdbm"):
        write_file(root / "vendor" / name / "README", name)
    return root


@pytest.fixture
def make_options(tmp_path: pathlib.Path, source_root: pathlib.Path) -> Callable[..., PackagingOptions]:
    def factory(**overrides) -> PackagingOptions:
        kwargs = {
            "entrance": None,
            "tmpdir": tmp_path / "rubyc-tmp",
            "source_root": source_root,
            "output": tmp_path / "out" / "app.bin",
            "windows": False,
            "cwd": tmp_path,
        }
        kwargs.update(overrides)
        return resolve_packaging_options(**kwargs)

    return factory
