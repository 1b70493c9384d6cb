from __future__ import annotations

import io
import sys

import pytest

from edge_deploy_kit.errors import CommandExecutionError
from edge_deploy_kit.subprocess_utils import retry_call, run_command


def test_stream_output_merges_stderr_and_echoes(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    stream_output=True 이면 stderr 도 stdout 으로 합쳐 터미널에 흘리면서 동시에 버퍼링해야 한다.
    """
    fake_out = io.StringIO()
    monkeypatch.setattr(sys, "stdout", fake_out)

    cmd = [
        sys.executable,
        "-c",
        "import sys; print('hello'); sys.stdout.flush(); print('oops', file=sys.stderr)",
    ]
    result = run_command(cmd, stream_output=True, timeout=10)

    assert result.returncode == 0
    assert "hello" in result.output
    assert "oops" in result.output
    assert "hello" in fake_out.getvalue()


def test_failure_keeps_buffered_output() -> None:
    cmd = [sys.executable, "-c", "import sys; print('partial work'); sys.exit(3)"]

    with pytest.raises(CommandExecutionError) as excinfo:
        run_command(cmd, stream_output=True, timeout=10)

    err = excinfo.value
    assert err.returncode == 3
    assert "partial work" in err.output
    assert "partial work" in err.format_message()


def test_stream_timeout_kills_child() -> None:
    cmd = [sys.executable, "-c", "import time; print('start', flush=True); time.sleep(30)"]

    with pytest.raises(CommandExecutionError) as excinfo:
        run_command(cmd, stream_output=True, timeout=0.5)

    assert excinfo.value.timed_out
    assert "start" in excinfo.value.output


def test_captured_mode_passes_stdin() -> None:
    cmd = [sys.executable, "-c", "import sys; print(sys.stdin.read().strip().upper())"]

    result = run_command(cmd, input_text="secret-value\n", timeout=10)

    assert result.stdout.strip() == "SECRET-VALUE"


def test_missing_command_is_reported_as_execution_error() -> None:
    with pytest.raises(CommandExecutionError) as excinfo:
        run_command(["definitely-not-a-real-command-xyz"], timeout=5)

    assert excinfo.value.returncode == 127


def test_retry_call_retries_only_classified_errors() -> None:
    attempts = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise CommandExecutionError(["flaky"], returncode=1)
        return "ok"

    assert retry_call(flaky, attempts=3, delay=0, sleep=lambda _s: None) == "ok"
    assert len(attempts) == 3

    calls = []

    def broken() -> None:
        calls.append(1)
        raise ValueError("not transient")

    with pytest.raises(ValueError):
        retry_call(broken, attempts=3, delay=0, sleep=lambda _s: None)
    assert len(calls) == 1


def test_retry_call_gives_up_after_fixed_attempts() -> None:
    slept = []

    def always_fails() -> None:
        raise CommandExecutionError(["flaky"], returncode=1)

    with pytest.raises(CommandExecutionError):
        retry_call(always_fails, attempts=2, delay=1.5, sleep=slept.append)

    assert slept == [1.5]
