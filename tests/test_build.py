import sys

from buildwatch.build import BuildExecutor


def _python(code):
    return [sys.executable, "-c", code]


def test_successful_build(tmp_path, event_log, log_messages):
    executor = BuildExecutor(_python("print('Compiling server v0.1.0')"), tmp_path)

    result = executor.run()

    assert result.succeeded
    assert result.exit_status == 0
    assert result.error is None
    assert result.finished_at >= result.started_at
    assert "Compiling server v0.1.0" in log_messages()


def test_build_runs_in_work_dir(tmp_path):
    executor = BuildExecutor(_python("open('built.txt', 'w').write('ok')"), tmp_path)

    assert executor.run().succeeded
    assert (tmp_path / "built.txt").read_text() == "ok"


def test_failing_build_returns_result(tmp_path, event_log, log_messages):
    executor = BuildExecutor(_python("import sys; print('error[E0308]'); sys.exit(101)"), tmp_path)

    result = executor.run()

    assert not result.succeeded
    assert result.exit_status == 101
    assert result.error == "exit status 101"
    assert "error[E0308]" in log_messages()


def test_missing_build_tool_is_a_failure(tmp_path):
    executor = BuildExecutor(["definitely-not-a-build-tool-xyz"], tmp_path)

    result = executor.run()

    assert not result.succeeded
    assert result.exit_status is None
    assert result.error


def test_build_timeout_is_a_failure(tmp_path):
    executor = BuildExecutor(_python("import time; time.sleep(30)"), tmp_path, timeout=0.5)

    result = executor.run()

    assert not result.succeeded
    assert result.exit_status is None
    assert "timed out" in result.error
    assert result.duration_seconds < 10


def test_to_dict(tmp_path):
    result = BuildExecutor(_python("pass"), tmp_path).run()

    data = result.to_dict()
    assert data["succeeded"] is True
    assert data["exit_status"] == 0
    assert data["duration_seconds"] >= 0
