"""
rollback
--------

원격 부수효과가 생길 때마다 보상 작업(RollbackAction)을 쌓아 두고,
명시적으로 롤백을 요청받으면 가장 최근 작업부터 역순으로 재생한다.

- 정상 경로에서는 register() 만 호출된다. 등록된 작업은 바뀌지 않는다.
- 재생 중 한 작업이 실패해도 나머지 작업은 계속 시도하고, 결과를 모두 보고한다.
- 자동 재생 여부는 RollbackPolicy 로 명시한다. 기본값은 manual 이며,
  이 경우 계획을 파일로 저장해 두고 `deploy-edge rollback <id>` 로 나중에 실행한다.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import EdgeDeployError
from .local_state import atomic_write_json, read_json
from .logging_utils import get_logger
from .models import utc_now
from .subprocess_utils import run_command


logger = get_logger(__name__)

DELETE_RESOURCE = "delete-resource"
DELETE_SECRET = "delete-secret"


class RollbackPolicy(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


@dataclass(frozen=True)
class RollbackAction:
    type: str
    target: str
    command: Tuple[str, ...]
    description: str
    environment: Optional[str] = None
    created_at: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "target": self.target,
            "command": list(self.command),
            "description": self.description,
            "environment": self.environment,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackAction":
        return cls(
            type=data["type"],
            target=data["target"],
            command=tuple(data.get("command") or ()),
            description=data.get("description", ""),
            environment=data.get("environment"),
            created_at=data.get("created_at") or utc_now().isoformat(),
        )


@dataclass
class RollbackOutcome:
    action: RollbackAction
    succeeded: bool
    error: Optional[str] = None


@dataclass
class RollbackReport:
    outcomes: List[RollbackOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[RollbackOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> List[RollbackOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    @property
    def status(self) -> str:
        if not self.outcomes:
            return "empty"
        return "completed" if not self.failed else "partial"

    def render(self) -> str:
        lines = ["# Rollback summary", f"- status: {self.status}", ""]
        lines.append("## Rolled back")
        lines.extend(f"- {o.action.type} {o.action.target}" for o in self.succeeded)
        if not self.succeeded:
            lines.append("- (none)")
        lines.append("")
        lines.append("## Failed to roll back")
        lines.extend(f"- {o.action.type} {o.action.target}: {o.error}" for o in self.failed)
        if not self.failed:
            lines.append("- (none)")
        return "\n".join(lines)


Runner = Callable[[RollbackAction], None]


def command_runner(
    *,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float = 120.0,
    run: Callable[..., Any] = run_command,
) -> Runner:
    """보상 명령을 그대로 subprocess 로 실행하는 기본 runner."""

    def _run(action: RollbackAction) -> None:
        if not action.command:
            raise EdgeDeployError(f"보상 명령이 없습니다: {action.type} {action.target}")
        run(action.command, cwd=cwd, env=env, timeout=timeout)

    return _run


class RollbackRegistry:
    def __init__(
        self,
        actions: Optional[List[RollbackAction]] = None,
        *,
        audit=None,  # noqa: ANN001
        deployment_id: Optional[str] = None,
    ) -> None:
        # DeploymentState.rollback_actions 와 같은 리스트 객체를 공유한다.
        self._actions: List[RollbackAction] = actions if actions is not None else []
        self._audit = audit
        self.deployment_id = deployment_id

    @property
    def actions(self) -> Sequence[RollbackAction]:
        return tuple(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    def of_type(self, action_type: str) -> List[RollbackAction]:
        return [a for a in self._actions if a.type == action_type]

    def register(self, action: RollbackAction) -> None:
        self._actions.append(action)
        logger.debug("롤백 작업 등록: %s %s", action.type, action.target)
        if self._audit is not None:
            self._audit.log_rollback(self.deployment_id, "register", action.to_dict())

    def replay(self, runner: Optional[Runner] = None) -> RollbackReport:
        run = runner or command_runner()
        report = RollbackReport()
        if self._audit is not None:
            self._audit.log_rollback(self.deployment_id, "start", {"actions": len(self._actions)})

        for action in reversed(self._actions):
            logger.info("롤백 실행: %s", action.description or f"{action.type} {action.target}")
            try:
                run(action)
            except Exception as e:  # noqa: BLE001
                # 하나가 실패해도 나머지 보상 작업은 계속 시도한다.
                logger.error("롤백 실패: %s %s (%s)", action.type, action.target, e)
                report.outcomes.append(RollbackOutcome(action, False, str(e)))
            else:
                report.outcomes.append(RollbackOutcome(action, True))
            if self._audit is not None:
                outcome = report.outcomes[-1]
                self._audit.log_rollback(
                    self.deployment_id,
                    "action",
                    {**action.to_dict(), "succeeded": outcome.succeeded, "error": outcome.error},
                )

        if self._audit is not None:
            self._audit.log_rollback(
                self.deployment_id,
                "end",
                {
                    "status": report.status,
                    "succeeded": len(report.succeeded),
                    "failed": len(report.failed),
                },
            )
        return report

    def remaining(self, report: RollbackReport) -> "RollbackRegistry":
        """재생에 실패한 작업만 등록 순서대로 담은 새 레지스트리."""
        failed = {id(o.action) for o in report.failed}
        return RollbackRegistry(
            [a for a in self._actions if id(a) in failed], deployment_id=self.deployment_id
        )

    # ------------------------------------------------------------------
    # 수동 롤백을 위한 계획 저장/로드
    # ------------------------------------------------------------------

    def save(self, path: str) -> str:
        atomic_write_json(
            path,
            {
                "deployment_id": self.deployment_id,
                "saved": utc_now().isoformat(),
                "actions": [a.to_dict() for a in self._actions],
            },
        )
        return path

    @classmethod
    def load(cls, path: str, *, audit=None) -> "RollbackRegistry":  # noqa: ANN001
        data = read_json(path)
        if data is None:
            raise EdgeDeployError(
                f"롤백 계획 파일이 없습니다: {path}",
                remediation="배포 ID 가 맞는지, 상태 디렉토리(EDGE_STATE_DIR)가 같은지 확인하세요",
            )
        actions = [RollbackAction.from_dict(item) for item in data.get("actions", [])]
        return cls(actions, audit=audit, deployment_id=data.get("deployment_id"))


def plan_path(rollback_dir: str, deployment_id: str) -> str:
    return os.path.join(rollback_dir, f"{deployment_id}.json")
