"""
wrangler
--------

Cloudflare wrangler CLI 래퍼.

버전/인증 확인, D1 목록/생성/삭제, 워커 시크릿 등록처럼 배포 과정에서 쓰는
하위 명령을 한곳에 모은다. 조회성 명령(probe)만 재시도하며,
상태를 바꾸는 명령(create/delete/secret put/deploy)은 한 번만 실행한다.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import CommandExecutionError, EdgeDeployError
from .logging_utils import get_logger, register_sensitive_values
from .models import Credentials
from .rollback import Runner, command_runner
from .subprocess_utils import RunResult, retry_call, run_command


logger = get_logger(__name__)

_UUID_RE = re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.I)
_DATABASE_ID_RE = re.compile(r"database_id\"?\s*[=:]\s*\"([^\"]+)\"")
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_ACCOUNT_ID_RE = re.compile(r"\b[0-9a-f]{32}\b")
_WARNING_MARKERS = ("Warning", "warning", "WARN", "⚠️", "▲")


@dataclass(frozen=True)
class D1Database:
    name: str
    id: str


@dataclass(frozen=True)
class WhoAmI:
    authenticated: bool
    email: Optional[str] = None
    account_ids: Tuple[str, ...] = ()


def parse_d1_list(output: str) -> List[D1Database]:
    """`wrangler d1 list --json` 결과를 파싱한다. JSON 이 아니면 표 형식에서 UUID 를 찾는다."""
    text = output.strip()
    start = text.find("[")
    if start != -1:
        try:
            items = json.loads(text[start:])
        except ValueError:
            items = None
        if isinstance(items, list):
            found = []
            for item in items:
                if not isinstance(item, dict):
                    continue
                db_id = item.get("uuid") or item.get("database_id") or item.get("id")
                if item.get("name") and db_id:
                    found.append(D1Database(name=str(item["name"]), id=str(db_id)))
            return found

    found = []
    for line in text.splitlines():
        match = _UUID_RE.search(line)
        if not match:
            continue
        cells = [c.strip() for c in re.split(r"[│|]", line) if c.strip()]
        names = [c for c in cells if c != match.group(0)]
        if names:
            found.append(D1Database(name=names[0], id=match.group(0)))
    return found


def parse_database_id(output: str) -> Optional[str]:
    match = _DATABASE_ID_RE.search(output)
    if match:
        return match.group(1)
    match = _UUID_RE.search(output)
    return match.group(0) if match else None


def parse_whoami(output: str) -> WhoAmI:
    if re.search(r"not authenticated|not logged in", output, re.I):
        return WhoAmI(authenticated=False)
    email_match = _EMAIL_RE.search(output)
    account_ids = tuple(dict.fromkeys(_ACCOUNT_ID_RE.findall(output)))
    authenticated = bool(email_match or account_ids or re.search(r"Account", output))
    return WhoAmI(
        authenticated=authenticated,
        email=email_match.group(0) if email_match else None,
        account_ids=account_ids,
    )


def extract_warnings(output: str) -> List[str]:
    return [
        line.strip()
        for line in output.splitlines()
        if any(marker in line for marker in _WARNING_MARKERS)
    ]


class WranglerCLI:
    def __init__(
        self,
        base_command: Sequence[str] = ("npx", "wrangler"),
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: float = 60.0,
        retry_attempts: int = 3,
        retry_delay: float = 2.0,
        runner: Callable[..., RunResult] = run_command,
    ) -> None:
        self.base_command = list(base_command)
        self.cwd = cwd
        self.env: Dict[str, str] = dict(env if env is not None else os.environ)
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._runner = runner

    @classmethod
    def from_config(cls, cfg) -> "WranglerCLI":  # noqa: ANN001
        return cls(
            cfg.wrangler_command,
            cwd=cfg.base_dir,
            timeout=cfg.command_timeout,
            retry_attempts=cfg.retry_attempts,
            retry_delay=cfg.retry_delay,
        )

    def use_credentials(self, credentials: Credentials) -> None:
        """wrangler 가 비대화형으로 인증하도록 토큰/계정을 자식 프로세스 환경에 넣는다."""
        register_sensitive_values([credentials.token])
        self.env["CLOUDFLARE_API_TOKEN"] = credentials.token
        self.env["CLOUDFLARE_ACCOUNT_ID"] = credentials.account_id

    def command(self, *args: str) -> List[str]:
        return [*self.base_command, *args]

    def compensation_runner(self) -> Runner:
        """롤백 계획에 저장된 전체 명령줄을 이 CLI 의 환경(토큰 포함)으로 실행한다."""
        return command_runner(cwd=self.cwd, env=self.env, timeout=self.timeout, run=self._runner)

    def run(
        self,
        args: Sequence[str],
        *,
        stream_output: bool = False,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> RunResult:
        return self._runner(
            self.command(*args),
            cwd=self.cwd,
            env=self.env,
            timeout=timeout if timeout is not None else self.timeout,
            stream_output=stream_output,
            input_text=input_text,
        )

    def probe(self, args: Sequence[str], *, description: str = "") -> RunResult:
        return retry_call(
            lambda: self.run(args),
            attempts=self.retry_attempts,
            delay=self.retry_delay,
            description=description or " ".join(args),
        )

    # --- 조회 ---------------------------------------------------------

    def version(self) -> str:
        return self.probe(["--version"], description="wrangler 버전 확인").output.strip()

    def whoami(self) -> WhoAmI:
        result = self.probe(["whoami"], description="wrangler 인증 확인")
        return parse_whoami(result.output)

    def d1_list(self) -> List[D1Database]:
        result = self.probe(["d1", "list", "--json"], description="D1 목록 조회")
        return parse_d1_list(result.output)

    def d1_find(self, name: str) -> Optional[D1Database]:
        return next((db for db in self.d1_list() if db.name == name), None)

    # --- 변경 ---------------------------------------------------------

    def d1_create(self, name: str) -> str:
        result = self.run(["d1", "create", name])
        db_id = parse_database_id(result.output)
        if not db_id:
            raise CommandExecutionError(
                self.command("d1", "create", name),
                returncode=0,
                output=result.output,
                message=f"D1 데이터베이스는 만들어졌지만 ID 를 출력에서 찾지 못했습니다: {name}",
                remediation='"wrangler d1 list" 로 ID 를 확인하세요',
            )
        return db_id

    def d1_delete_command(self, name: str) -> Tuple[str, ...]:
        return tuple(self.command("d1", "delete", name, "--skip-confirmation"))

    def d1_delete(self, name: str) -> None:
        self.run(["d1", "delete", name, "--skip-confirmation"])

    def _secret_scope(self, environment: Optional[str], worker_name: Optional[str]) -> List[str]:
        scope: List[str] = []
        if worker_name:
            scope += ["--name", worker_name]
        if environment:
            scope += ["--env", environment]
        return scope

    def secret_put(
        self,
        key: str,
        value: str,
        *,
        environment: Optional[str] = None,
        worker_name: Optional[str] = None,
    ) -> None:
        if not value:
            raise EdgeDeployError(f"빈 시크릿 값은 등록할 수 없습니다: {key}")
        register_sensitive_values([value])
        # 값은 명령줄이 아니라 stdin 으로 넘긴다.
        self.run(
            ["secret", "put", key, *self._secret_scope(environment, worker_name)],
            input_text=value + "\n",
        )

    def secret_delete_command(
        self,
        key: str,
        *,
        environment: Optional[str] = None,
        worker_name: Optional[str] = None,
    ) -> Tuple[str, ...]:
        return tuple(self.command("secret", "delete", key, *self._secret_scope(environment, worker_name)))
