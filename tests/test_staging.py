import logging
import pathlib

import pytest

from conftest import FakeRunner, write_file
from ruby_packer.errors import ConfigurationError, EntranceNotFound, StagingError
from ruby_packer.payload import classify_payload
from ruby_packer.staging import MEMFS_ROOT, stage_payload


def _stage(project: pathlib.Path, entrance: str, make_options, runner: FakeRunner, logger: logging.Logger, **kw):
    kw.setdefault("cwd", project)
    options = make_options(entrance=entrance, root=project, **kw)
    payload = classify_payload(project, logger=logger)
    return options, stage_payload(payload, options=options, runner=runner, logger=logger)


def _install_dir(cmd: list[str]) -> pathlib.Path:
    return pathlib.Path(cmd[cmd.index("--install-dir") + 1])


# Bare scripts


def test_bare_script_entrance(tmp_path, make_options, runner, logger) -> None:
    project = tmp_path / "project"
    write_file(project / "app.rb", "puts 'hi'")

    options, result = _stage(project, "app.rb", make_options, runner, logger)

    assert result.entrance == f"{MEMFS_ROOT}/_local_/app.rb"
    assert result.entrance == "/__enclose_io_memfs__/_local_/app.rb"
    assert result.chdir_at_startup is None
    assert result.work_dir == options.work_dir
    assert result.host_path(result.entrance).read_text(encoding="utf-8") == "puts 'hi'"
    assert runner.calls == []


def test_bare_script_absolute_entrance_is_made_relative(tmp_path, make_options, runner, logger) -> None:
    project = tmp_path / "project"
    write_file(project / "lib" / "main.rb")

    _options, result = _stage(project, str(project / "lib" / "main.rb"), make_options, runner, logger)
    assert result.entrance == f"{MEMFS_ROOT}/_local_/lib/main.rb"


def test_bare_script_absolute_entrance_outside_root(tmp_path, make_options, runner, logger) -> None:
    project = tmp_path / "project"
    write_file(project / "app.rb")
    outside = write_file(tmp_path / "elsewhere" / "app.rb")

    with pytest.raises(ConfigurationError, match="not in the project root"):
        _stage(project, str(outside), make_options, runner, logger)


def test_bare_script_entrance_relative_to_subdirectory(tmp_path, make_options, runner, logger) -> None:
    project = tmp_path / "project"
    (project / ".git").mkdir(parents=True)
    write_file(project / "sub" / "app.rb")

    options = make_options(entrance="app.rb", cwd=project / "sub")
    assert options.root == project.resolve()

    result = stage_payload(classify_payload(options.root), options=options, runner=runner, logger=logger)
    assert result.entrance == f"{MEMFS_ROOT}/_local_/sub/app.rb"


def test_bare_script_entrance_relative_to_parent_of_root(tmp_path, make_options, runner, logger) -> None:
    project = tmp_path / "project"
    write_file(project / "app.rb")

    _options, result = _stage(project, "project/app.rb", make_options, runner, logger, cwd=tmp_path)
    assert result.entrance == f"{MEMFS_ROOT}/_local_/app.rb"


def test_bare_script_missing_entrance(tmp_path, make_options, runner, logger) -> None:
    project = tmp_path / "project"
    write_file(project / "app.rb")

    with pytest.raises(EntranceNotFound) as excinfo:
        _stage(project, "missing.rb", make_options, runner, logger)
    assert excinfo.value.entrance == "missing.rb"


def test_bare_script_keeps_git_dir(tmp_path, make_options, runner, logger) -> None:
    project = tmp_path / "project"
    write_file(project / "app.rb")
    write_file(project / ".git" / "HEAD", "ref: refs/heads/main")

    _options, result = _stage(project, "app.rb", make_options, runner, logger)
    assert result.host_path(f"{MEMFS_ROOT}/_local_/.git/HEAD").is_file()


def test_output_inside_root_is_not_staged(tmp_path, make_options, runner, logger) -> None:
    project = tmp_path / "project"
    write_file(project / "app.rb")
    write_file(project / "app.bin", "old build")

    _options, result = _stage(project, "app.rb", make_options, runner, logger, output=project / "app.bin")
    assert result.host_path(f"{MEMFS_ROOT}/_local_/app.bin").exists() is False
    assert result.host_path(f"{MEMFS_ROOT}/_local_/app.rb").exists() is True


def test_work_dir_is_rebuilt_per_stage(tmp_path, make_options, runner, logger) -> None:
    project = tmp_path / "project"
    write_file(project / "app.rb")
    options = make_options(entrance="app.rb", root=project, cwd=project)
    stale = write_file(options.work_dir / "__enclose_io_memfs__" / "_local_" / "stale.rb")

    stage_payload(classify_payload(project), options=options, runner=runner, logger=logger)
    assert stale.exists() is False


# Bundled apps


def _bundled_project(tmp_path: pathlib.Path) -> pathlib.Path:
    project = tmp_path / "project"
    write_file(project / "Gemfile", "source 'https://rubygems.org'\n")
    write_file(project / "Gemfile.lock", "")
    return project


def test_bundled_app_bin_convention(tmp_path, make_options, runner, logger) -> None:
    project = _bundled_project(tmp_path)
    write_file(project / "bin" / "app", "#!/usr/bin/env ruby\n")
    write_file(project / ".git" / "HEAD")

    @runner.on("bundle", "install", "--deployment")
    def deploy(cmd, cwd):
        write_file(cwd / "vendor" / "bundle" / "ruby" / "2.4.0" / "cache" / "rack-2.0.gem")
        write_file(cwd / "vendor" / "bundle" / "ruby" / "2.4.0" / "gems" / "rack-2.0" / "lib" / "rack.rb")

    _options, result = _stage(project, "app", make_options, runner, logger)

    assert result.entrance == "/__enclose_io_memfs__/_local_/bin/app"
    assert result.chdir_at_startup == "/__enclose_io_memfs__/_local_"
    assert result.host_path(result.entrance).is_file()
    local = result.host_path(result.chdir_at_startup)
    assert (local / ".git").exists() is False
    assert (local / "vendor" / "bundle" / "ruby" / "2.4.0" / "cache").exists() is False
    assert (local / "vendor" / "bundle" / "ruby" / "2.4.0" / "gems" / "rack-2.0" / "lib" / "rack.rb").is_file()
    assert runner.commands() == [["bundle", "install", "--deployment"]]
    assert runner.calls[0][1] == local
    # The source project is untouched.
    assert (project / ".git" / "HEAD").is_file()


def test_bundled_app_binstub_name_from_outside_root(tmp_path, make_options, runner, logger) -> None:
    project = _bundled_project(tmp_path)
    write_file(project / "bin" / "app")

    _options, result = _stage(project, "app", make_options, runner, logger, cwd=tmp_path)
    assert result.entrance == "/__enclose_io_memfs__/_local_/bin/app"


def test_bundled_app_literal_path_from_outside_root(tmp_path, make_options, runner, logger) -> None:
    project = _bundled_project(tmp_path)
    write_file(project / "script" / "run.rb")

    _options, result = _stage(project, "project/script/run.rb", make_options, runner, logger, cwd=tmp_path)
    assert result.entrance == "/__enclose_io_memfs__/_local_/script/run.rb"


def test_bundled_app_literal_path_wins(tmp_path, make_options, runner, logger) -> None:
    project = _bundled_project(tmp_path)
    write_file(project / "script" / "run.rb")

    _options, result = _stage(project, "script/run.rb", make_options, runner, logger)
    assert result.entrance == "/__enclose_io_memfs__/_local_/script/run.rb"


def test_bundled_app_generates_binstubs(tmp_path, make_options, runner, logger) -> None:
    project = _bundled_project(tmp_path)

    @runner.on("bundle", "install", "--deployment", "--binstubs")
    def binstubs(cmd, cwd):
        write_file(cwd / "bin" / "rackup", "#!/usr/bin/env ruby\n")

    _options, result = _stage(project, "rackup", make_options, runner, logger)

    assert result.entrance == "/__enclose_io_memfs__/_local_/bin/rackup"
    assert runner.commands() == [
        ["bundle", "install", "--deployment"],
        ["bundle", "install", "--deployment", "--binstubs"],
    ]


def test_bundled_app_entrance_not_found_lists_stubs(tmp_path, make_options, runner, logger) -> None:
    project = _bundled_project(tmp_path)

    @runner.on("bundle", "install", "--deployment", "--binstubs")
    def binstubs(cmd, cwd):
        write_file(cwd / "bin" / "rake")
        write_file(cwd / "bin" / "rackup")

    with pytest.raises(EntranceNotFound) as excinfo:
        _stage(project, "app", make_options, runner, logger)
    assert excinfo.value.candidates == ["rackup", "rake"]
    assert "rackup, rake" in str(excinfo.value)


# Gem packages


def _gem_project(tmp_path: pathlib.Path, *, gemfile: bool = False) -> pathlib.Path:
    project = tmp_path / "project"
    write_file(project / "foo.gemspec", "Gem::Specification.new { |s| s.executables = ['foo'] }\n")
    write_file(project / "exe" / "foo")
    write_file(project / "foo-0.0.1.gem", "stale")
    if gemfile is True:
        write_file(project / "Gemfile", "gemspec\n")
    return project


def _register_gem_tools(runner: FakeRunner, executables: tuple[str, ...] = ("foo",)) -> None:
    @runner.on("gem", "build")
    def build(cmd, cwd):
        write_file(cwd / "foo-0.1.0.gem", "gem")

    @runner.on("bundle", "exec", "gem", "build")
    def bundle_build(cmd, cwd):
        write_file(cwd / "foo-0.1.0.gem", "gem")

    @runner.on("gem", "install")
    def install(cmd, cwd):
        install_dir = _install_dir(cmd)
        for name in executables:
            write_file(install_dir / "bin" / name, "#!/usr/bin/env ruby\n")
        write_file(install_dir / "cache" / "foo-0.1.0.gem")
        write_file(install_dir / "gems" / "foo-0.1.0" / "exe" / "foo")


def test_gem_package_entrance(tmp_path, make_options, runner, logger) -> None:
    project = _gem_project(tmp_path)
    _register_gem_tools(runner)

    options, result = _stage(project, "foo", make_options, runner, logger)

    assert result.entrance == "/__enclose_io_memfs__/_gems_/bin/foo"
    assert result.chdir_at_startup is None
    assert result.host_path(result.entrance).is_file()
    assert result.host_path("/__enclose_io_memfs__/_gems_/cache").exists() is False
    # The project tree itself is not part of the image.
    assert result.host_path("/__enclose_io_memfs__/_local_").exists() is False

    cmds = runner.commands()
    assert cmds[0] == ["gem", "build", "foo.gemspec"]
    assert cmds[1][:3] == ["gem", "install", "foo-0.1.0.gem"]
    assert "--local" in cmds[1]
    assert _install_dir(cmds[1]) == options.work_dir / "__enclose_io_memfs__" / "_gems_"
    # Built in a scratch copy, not in the project.
    assert runner.calls[0][1] == options.tmpdir / "__pre_prepare__"
    assert (project / "foo-0.1.0.gem").exists() is False


def test_gem_package_with_gemfile_uses_bundler(tmp_path, make_options, runner, logger) -> None:
    project = _gem_project(tmp_path, gemfile=True)
    _register_gem_tools(runner)

    _stage(project, "foo", make_options, runner, logger)

    cmds = runner.commands()
    assert cmds[0] == ["bundle", "install"]
    assert cmds[1] == ["bundle", "exec", "gem", "build", "foo.gemspec"]


def test_gem_package_ignores_lowercase_gemfile(tmp_path, make_options, runner, logger) -> None:
    project = _gem_project(tmp_path)
    write_file(project / "gemfile", "gemspec\n")
    _register_gem_tools(runner)

    _stage(project, "foo", make_options, runner, logger)

    assert runner.commands()[0] == ["gem", "build", "foo.gemspec"]


def test_gem_package_unknown_executable(tmp_path, make_options, runner, logger) -> None:
    project = _gem_project(tmp_path)
    _register_gem_tools(runner, executables=("foo", "foo-server"))

    with pytest.raises(EntranceNotFound) as excinfo:
        _stage(project, "bar", make_options, runner, logger)
    assert excinfo.value.candidates == ["foo", "foo-server"]


def test_gem_build_without_artifact(tmp_path, make_options, runner, logger) -> None:
    project = _gem_project(tmp_path)

    with pytest.raises(StagingError, match="gem building failed"):
        _stage(project, "foo", make_options, runner, logger)


def test_two_gemspecs_invoke_no_tools(tmp_path, make_options, runner, logger) -> None:
    project = tmp_path / "project"
    write_file(project / "a.gemspec")
    write_file(project / "b.gemspec")
    options = make_options(entrance="a", root=project)

    with pytest.raises(StagingError):
        payload = classify_payload(project, logger=logger)
        stage_payload(payload, options=options, runner=runner, logger=logger)

    assert runner.calls == []
    assert options.tmpdir.exists() is False
