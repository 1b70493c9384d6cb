"""
pytest 설정:

로컬 작업 환경에 설치된 다른 버전의 edge_deploy_kit 패키지가 존재할 때,
`pytest` 실행 시 site-packages 쪽이 먼저 import 되어 테스트가 깨질 수 있다.

테스트는 항상 현재 레포의 소스를 대상으로 해야 하므로, repo root 를 sys.path 최상단에 고정한다.

공통 fixture
- kit_config: tmp_path 를 base_dir 로 쓰고 재시도 지연/검증 임계값을 0 으로 둔 설정
- fake_wrangler: WranglerCLI 에 runner 로 주입하는 가짜 wrangler (원격 상태를 메모리에 흉내낸다)
- wrangler: fake_wrangler 를 쓰는 WranglerCLI
"""

from __future__ import annotations

import json
import os
import sys
import uuid
from typing import Dict, List, Optional, Sequence

import pytest


def pytest_configure() -> None:
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


BASE_COMMAND = ("npx", "wrangler")

WHOAMI_OUTPUT = (
    "Getting User settings...\n"
    "You are logged in with an API Token, associated with the email dev@example.com.\n"
    "│ Account Name │ Account ID                       │\n"
    "│ Example      │ 0123456789abcdef0123456789abcdef │\n"
)


class FakeWrangler:
    """`npx wrangler ...` 호출을 가로채 메모리 상태로 응답하는 runner."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self.inputs: Dict[str, str] = {}
        self.databases: Dict[str, str] = {}
        self.secrets: Dict[str, str] = {}
        self.fail_secret_at: Optional[int] = None
        self.deploy_output = (
            "Total Upload: 12.3 KiB\n"
            "Uploaded foo (1.2 sec)\n"
            "Deployed foo triggers (0.5 sec)\n"
            "  https://foo.workers.dev\n"
        )
        self.deploy_returncode = 0
        self.dry_run_output = "Total Upload: 12.3 KiB\n--dry-run: exiting now.\n"
        self.whoami_output = WHOAMI_OUTPUT
        self._secret_puts = 0

    def calls_of(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if c[: len(prefix)] == list(prefix)]

    def __call__(
        self,
        cmd: Sequence[str],
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        stream_output: bool = False,
        input_text: Optional[str] = None,
    ):
        from edge_deploy_kit.errors import CommandExecutionError
        from edge_deploy_kit.subprocess_utils import RunResult

        assert list(cmd[: len(BASE_COMMAND)]) == list(BASE_COMMAND)
        args = list(cmd[len(BASE_COMMAND):])
        self.calls.append(args)
        self.envs.append(dict(env or {}))

        def ok(stdout: str = "") -> RunResult:
            return RunResult(returncode=0, stdout=stdout, stderr="")

        if args == ["--version"]:
            return ok("3.99.0\n")
        if args == ["whoami"]:
            return ok(self.whoami_output)
        if args[:2] == ["d1", "list"]:
            return ok(json.dumps([{"uuid": i, "name": n} for n, i in self.databases.items()]))
        if args[:2] == ["d1", "create"]:
            db_id = str(uuid.uuid4())
            self.databases[args[2]] = db_id
            return ok(
                "✅ Successfully created DB\n\n[[d1_databases]]\n"
                f'binding = "DB"\ndatabase_name = "{args[2]}"\ndatabase_id = "{db_id}"\n'
            )
        if args[:2] == ["d1", "delete"]:
            self.databases.pop(args[2], None)
            return ok("Deleted.\n")
        if args[:2] == ["secret", "put"]:
            self._secret_puts += 1
            if self.fail_secret_at == self._secret_puts:
                raise CommandExecutionError(cmd, returncode=1, output="✘ [ERROR] secret put failed")
            self.secrets[args[2]] = (input_text or "").strip()
            self.inputs[args[2]] = input_text or ""
            return ok(f"✨ Success! Uploaded secret {args[2]}\n")
        if args[:2] == ["secret", "delete"]:
            self.secrets.pop(args[2], None)
            return ok("✨ Success! Deleted secret\n")
        if args[:1] == ["deploy"]:
            if "--dry-run" in args:
                return ok(self.dry_run_output)
            if self.deploy_returncode != 0:
                raise CommandExecutionError(cmd, returncode=self.deploy_returncode, output=self.deploy_output)
            return ok(self.deploy_output)
        raise AssertionError(f"unexpected wrangler call: {args}")


@pytest.fixture
def kit_config(tmp_path):
    from edge_deploy_kit.config import KitConfig

    return KitConfig(
        base_dir=str(tmp_path),
        required_commands=[],
        min_node_major=0,
        network_endpoints=[],
        min_free_disk_mb=0,
        min_free_memory_mb=0,
        retry_attempts=1,
        retry_delay=0.0,
        generate_secret_distribution=False,
    )


@pytest.fixture
def fake_wrangler() -> FakeWrangler:
    return FakeWrangler()


@pytest.fixture
def wrangler(fake_wrangler: FakeWrangler):
    from edge_deploy_kit.wrangler import WranglerCLI

    return WranglerCLI(BASE_COMMAND, env={}, retry_attempts=1, retry_delay=0.0, runner=fake_wrangler)
