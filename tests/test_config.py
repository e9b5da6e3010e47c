import pytest

from buildwatch.config import parse_events, parse_timeout
from buildwatch.ports import BindAddress


def test_paths_resolve_against_work_dir(make_config, tmp_path):
    config = make_config(artifact_path="target/release/server")

    assert config.work_dir == tmp_path.resolve()
    assert config.watch_root == tmp_path.resolve() / "src"
    assert config.artifact_path == tmp_path.resolve() / "target" / "release" / "server"
    assert config.log_file == tmp_path.resolve() / "monitor.log"


def test_absolute_paths_are_kept(make_config, tmp_path):
    config = make_config(log_file=tmp_path / "logs" / "buildwatch.log")

    assert config.log_file == tmp_path / "logs" / "buildwatch.log"
    assert config.log_file.parent.is_dir()


def test_bind_address_and_build_command_are_parsed(make_config):
    config = make_config(bind_address="0.0.0.0:9000", build_command="cargo build --release")

    assert config.bind_address == BindAddress("0.0.0.0", 9000)
    assert config.build_argv == ["cargo", "build", "--release"]


def test_timeouts_default_to_unbounded(make_config):
    config = make_config(build_timeout=None, stop_timeout="", watch_timeout="none")

    assert config.build_timeout is None
    assert config.stop_timeout is None
    assert config.watch_timeout is None


def test_invalid_values_are_rejected(make_config):
    with pytest.raises(ValueError):
        make_config(swap_strategy="rolling")
    with pytest.raises(ValueError):
        make_config(bind_address="8080")
    with pytest.raises(ValueError):
        make_config(watch_events="modify,attrib")


def test_parse_timeout():
    assert parse_timeout(None) is None
    assert parse_timeout("none") is None
    assert parse_timeout(0) is None
    assert parse_timeout("2.5") == 2.5
    assert parse_timeout(30) == 30.0


def test_parse_events():
    assert parse_events("create, modify") == frozenset({"create", "modify"})
    assert parse_events(["DELETE"]) == frozenset({"delete"})
    with pytest.raises(ValueError):
        parse_events("")


def test_crash_checks_are_periodic_by_default(make_config):
    assert make_config().crash_check_interval == 5.0
    assert make_config(crash_check_interval="2").crash_check_interval == 2.0
    assert make_config(crash_check_interval="none").crash_check_interval is None
