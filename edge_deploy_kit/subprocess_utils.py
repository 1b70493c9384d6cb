from __future__ import annotations

import os
import queue
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from textwrap import shorten
from typing import Callable, Mapping, Sequence, Tuple, Type, TypeVar

from .errors import CommandExecutionError
from .logging_utils import get_logger, redact


logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2.0

_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        if self.stderr:
            return self.stdout + self.stderr
        return self.stdout


def _is_tty(stream) -> bool:  # noqa: ANN001
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def _progress_enabled() -> bool:
    raw = os.getenv("CLI_SHOW_PROGRESS")
    if raw is not None and raw.strip().lower() in {"0", "false", "no", "n", "off"}:
        return False
    return _is_tty(sys.stderr)


class _IdleIndicator:
    """
    출력이 idle_seconds 이상 없을 때만 stderr 에 스피너와 경과시간을 그린다.
    wrangler deploy 처럼 업로드 중 한동안 조용한 명령에서 멈춘 것처럼 보이지 않게 한다.
    """

    def __init__(self, message: str, *, idle_seconds: float = 2.0, interval: float = 0.12) -> None:
        self._message = shorten(message, width=72, placeholder="…")
        self._idle_seconds = idle_seconds
        self._interval = interval
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._last_activity = time.monotonic()
        self._started = self._last_activity
        self._width = 0
        self._thread: threading.Thread | None = None

    def touch(self) -> None:
        with self._lock:
            self._last_activity = time.monotonic()
        self._clear()

    def _clear(self) -> None:
        if self._width:
            sys.stderr.write("\r" + " " * self._width + "\r")
            sys.stderr.flush()
            self._width = 0

    def _loop(self) -> None:
        idx = 0
        while not self._stop.wait(self._interval):
            with self._lock:
                idle = time.monotonic() - self._last_activity
            if idle < self._idle_seconds:
                continue
            elapsed = time.monotonic() - self._started
            text = f"{_FRAMES[idx % len(_FRAMES)]} {self._message}  {elapsed:0.1f}s"
            self._width = max(self._width, len(text))
            sys.stderr.write("\r" + text)
            sys.stderr.flush()
            idx += 1

    def __enter__(self) -> "_IdleIndicator":
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        self._clear()


def _display(cmd: Sequence[str]) -> str:
    return redact(" ".join(cmd))


def run_command(
    cmd: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = 300.0,
    stream_output: bool = False,
    input_text: str | None = None,
) -> RunResult:
    """
    subprocess 실행 공통 유틸.

    - stream_output=False: stdout/stderr 캡처. 실패하면 CommandExecutionError(output 포함)
    - stream_output=True : stdout/stderr 를 합쳐 실시간으로 터미널에 흘리면서 동시에 버퍼링한다.
      제한 시간을 넘기면 자식 프로세스를 강제 종료한다.
    """
    logger.info("명령 실행: %s", _display(cmd))

    if not stream_output:
        return _run_captured(cmd, cwd=cwd, env=env, timeout=timeout, input_text=input_text)

    try:
        proc = subprocess.Popen(  # noqa: S603
            list(cmd),
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
    except FileNotFoundError as e:
        raise CommandExecutionError(
            cmd,
            returncode=127,
            message=f"필요한 명령을 찾을 수 없습니다: {cmd[0]}",
            remediation="Node.js 와 wrangler 가 설치되어 있는지 확인하세요 (npm i -D wrangler)",
        ) from e

    if input_text is not None and proc.stdin is not None:
        proc.stdin.write(input_text)
        proc.stdin.close()

    out_lines: list[str] = []
    started = time.monotonic()
    deadline = None if timeout is None else started + float(timeout)
    q: queue.Queue[str | None] = queue.Queue()

    def _reader() -> None:
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                q.put(line)
        finally:
            q.put(None)

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    indicator = _IdleIndicator(_display(cmd)) if _progress_enabled() else None
    timed_out = False
    try:
        if indicator is not None:
            indicator.__enter__()
        while True:
            now = time.monotonic()
            if deadline is not None and now >= deadline:
                timed_out = True
                proc.kill()
                break
            wait = 0.1 if deadline is None else min(0.1, max(deadline - now, 0.0))
            try:
                item = q.get(timeout=wait)
            except queue.Empty:
                continue
            if item is None:
                break
            if indicator is not None:
                indicator.touch()
            out_lines.append(item)
            sys.stdout.write(item)
            sys.stdout.flush()

        if not timed_out:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            try:
                returncode = proc.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                timed_out = True
                proc.kill()
        if timed_out:
            proc.wait()
        reader_thread.join(timeout=1.0)
    finally:
        if indicator is not None:
            indicator.__exit__(None, None, None)
        if proc.stdout is not None:
            proc.stdout.close()

    combined = "".join(out_lines)
    if timed_out:
        raise CommandExecutionError(cmd, output=combined, timed_out=True)
    if returncode != 0:
        raise CommandExecutionError(cmd, returncode=returncode, output=combined)

    return RunResult(returncode=returncode, stdout=combined, stderr="")


def _run_captured(
    cmd: Sequence[str],
    *,
    cwd: str | None,
    env: Mapping[str, str] | None,
    timeout: float | None,
    input_text: str | None,
) -> RunResult:
    try:
        result = subprocess.run(  # noqa: S603
            list(cmd),
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            input=input_text,
        )
    except FileNotFoundError as e:
        raise CommandExecutionError(
            cmd,
            returncode=127,
            message=f"필요한 명령을 찾을 수 없습니다: {cmd[0]}",
            remediation="Node.js 와 wrangler 가 설치되어 있는지 확인하세요 (npm i -D wrangler)",
        ) from e
    except subprocess.TimeoutExpired as e:
        partial = e.stdout or ""
        if isinstance(partial, bytes):
            partial = partial.decode("utf-8", errors="replace")
        raise CommandExecutionError(cmd, output=partial, timed_out=True) from e

    stdout = result.stdout or ""
    stderr = result.stderr or ""
    if stdout:
        logger.debug("명령 stdout: %s", shorten(stdout.strip(), width=2000))
    if stderr:
        logger.debug("명령 stderr: %s", shorten(stderr.strip(), width=2000))

    if result.returncode != 0:
        raise CommandExecutionError(
            cmd,
            returncode=result.returncode,
            output=(stdout + ("\n" if stdout and stderr else "") + stderr),
        )
    return RunResult(returncode=result.returncode, stdout=stdout, stderr=stderr)


def retry_call(
    func: Callable[[], T],
    *,
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    delay: float = DEFAULT_RETRY_DELAY,
    retry_on: Tuple[Type[BaseException], ...] = (CommandExecutionError,),
    description: str = "",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    일시적 오류로 분류된 호출(네트워크/인증 probe, 목록 조회)만 고정 횟수/고정 간격으로 재시도한다.
    배포 명령이나 리소스 생성/삭제처럼 상태를 바꾸는 호출에는 사용하지 않는다.
    """
    attempts = max(int(attempts), 1)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt >= attempts:
                raise
            logger.warning(
                "재시도 %d/%d%s: %s",
                attempt,
                attempts - 1,
                f" ({description})" if description else "",
                e,
            )
            sleep(delay)
    raise AssertionError("unreachable")
