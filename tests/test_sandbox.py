import asyncio
import os
import sys

from engine.sandbox import CODE_PLACEHOLDER, NO_OUTPUT_HELP, SCRIPT_PREFIX, ExecutionSandbox, sanitize


def run(sandbox, code):
    return asyncio.run(sandbox.execute(code))


def make_sandbox(tmp_path, **kwargs):
    kwargs.setdefault("timeout", 10)
    return ExecutionSandbox(python_command=sys.executable, temp_dir=str(tmp_path), **kwargs)


def test_successful_run_returns_stdout(tmp_path):
    result = run(make_sandbox(tmp_path), "print('hello')\nprint(2 + 3)")
    assert result.success is True
    assert result.output == "hello\n5"
    assert os.listdir(tmp_path) == []


def test_silent_program_gets_help_text(tmp_path):
    result = run(make_sandbox(tmp_path), "x = 1")
    assert result.success is True
    assert result.output == NO_OUTPUT_HELP


def test_error_output_hides_script_path(tmp_path):
    result = run(make_sandbox(tmp_path), "print(undefined_name)")
    assert result.success is False
    assert "NameError" in result.output
    assert CODE_PLACEHOLDER in result.output
    assert str(tmp_path) not in result.output
    assert SCRIPT_PREFIX not in result.output
    assert os.listdir(tmp_path) == []


def test_exit_code_without_stderr(tmp_path):
    result = run(make_sandbox(tmp_path), "import sys\nsys.exit(3)")
    assert result.success is False
    assert result.output == "Program failed (exit code: 3)"


def test_runaway_program_is_killed(tmp_path):
    result = run(make_sandbox(tmp_path, timeout=1), "while True:\n    pass")
    assert result.success is False
    assert "timed out" in result.output
    assert os.listdir(tmp_path) == []


def test_missing_interpreter(tmp_path):
    sandbox = ExecutionSandbox(python_command="definitely-not-a-python-3", temp_dir=str(tmp_path))
    result = run(sandbox, "print(1)")
    assert result.success is False
    assert result.output.startswith("Server environment error")
    assert "definitely-not-a-python-3" in result.output


def test_unwritable_temp_dir_is_reported(tmp_path):
    sandbox = make_sandbox(tmp_path / "missing")
    result = run(sandbox, "print(1)")
    assert result.success is False
    assert result.output.startswith("System error:")


def test_concurrent_runs_do_not_share_scripts(tmp_path):
    sandbox = make_sandbox(tmp_path, max_concurrent=2)

    async def many():
        return await asyncio.gather(*(sandbox.execute(f"print({i})") for i in range(4)))

    results = asyncio.run(many())
    assert [r.output for r in results] == ["0", "1", "2", "3"]
    assert os.listdir(tmp_path) == []


def test_sanitize_replaces_bare_and_quoted_paths():
    path = "/tmp/python_code_abc123.py"
    text = f'Traceback:\n  File "{path}", line 1\n{path}: error\n  File "/var/x/python_code_zz.py", line 2'
    cleaned = sanitize(text, path)
    assert path not in cleaned
    assert "python_code_" not in cleaned
    assert cleaned.count(CODE_PLACEHOLDER) == 3


def test_spawn_failure_after_script_written_cleans_up(tmp_path, monkeypatch):
    real_spawn = asyncio.create_subprocess_exec
    calls = []

    async def spawn(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return await real_spawn(*args, **kwargs)
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", spawn)
    result = run(make_sandbox(tmp_path), "print(1)")

    assert len(calls) == 2
    assert calls[0][1] == "--version"
    assert result.success is False
    assert result.output == "System error: Permission denied"
    assert os.listdir(tmp_path) == []


def test_script_write_failure_closes_descriptor(tmp_path, monkeypatch):
    opened = []
    closed = []
    real_close = os.close

    def failing_fdopen(fd, *args, **kwargs):
        opened.append(fd)
        raise OSError(28, "No space left on device")

    def tracking_close(fd):
        closed.append(fd)
        real_close(fd)

    sandbox = make_sandbox(tmp_path)

    async def available():
        return True

    monkeypatch.setattr(sandbox, "_interpreter_available", available)
    monkeypatch.setattr(os, "fdopen", failing_fdopen)
    monkeypatch.setattr(os, "close", tracking_close)
    result = run(sandbox, "print(1)")

    assert result.output == "System error: No space left on device"
    assert opened and opened[0] in closed
    assert os.listdir(tmp_path) == []
