"""
confirmation
------------

상태를 바꾸는 원격 작업 전에 요약을 보여주고 명시적인 승인을 받는다.
거절은 실패가 아니라 정상 취소(UserCancelledError)이며, 이미 승인된 앞 단계는 되돌리지 않는다.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from .errors import UserCancelledError
from .logging_utils import get_logger
from .models import DeploymentConfig, DeploymentState
from .prompts import OperatorInterface


logger = get_logger(__name__)


def render_summary(title: str, summary: Mapping[str, Any], actions: Sequence[str]) -> str:
    lines = [f"# {title}"]
    for key, value in summary.items():
        lines.append(f"- {key}: {value if value not in (None, '') else '(미정)'}")
    lines.append("")
    lines.append("## Planned actions")
    if actions:
        lines.extend(f"- {a}" for a in actions)
    else:
        lines.append("- (none)")
    return "\n".join(lines)


class ConfirmationGate:
    def __init__(
        self,
        operator: OperatorInterface,
        audit=None,  # noqa: ANN001
        *,
        auto_approve: bool = False,
        deployment_id: Optional[str] = None,
    ) -> None:
        self.operator = operator
        self.audit = audit
        self.auto_approve = auto_approve
        self.deployment_id = deployment_id

    def _record(self, event_type: str, details: Mapping[str, Any]) -> None:
        if self.audit is None:
            return
        domain = self.audit.domain_of(self.deployment_id)
        self.audit.record(event_type, domain, details, deployment_id=self.deployment_id)

    def confirm(
        self,
        title: str,
        summary: Mapping[str, Any],
        actions: Sequence[str],
        prompt: str,
        default: bool = False,
    ) -> None:
        """승인되면 그대로 돌아오고, 거절되면 UserCancelledError 를 던진다."""
        self.operator.show(render_summary(title, summary, actions))

        if self.auto_approve:
            logger.info("자동 승인: %s", title)
            self._record("CONFIRMATION_GRANTED", {"title": title, "auto": True})
            return

        if self.operator.confirm(prompt, default=default):
            self._record("CONFIRMATION_GRANTED", {"title": title, "auto": False})
            return

        self._record("CONFIRMATION_DECLINED", {"title": title})
        raise UserCancelledError(title, phase="confirmation")

    def confirm_deployment(
        self,
        config: DeploymentConfig,
        state: DeploymentState,
        dry_run: bool = False,
    ) -> None:
        summary = {
            "domain": config.domain,
            "environment": config.environment,
            "worker": config.worker.name,
            "url": config.worker.url,
            "database": (
                f"{config.database.name} ({config.database.id})" if config.database.name else None
            ),
            "secrets": len(config.secrets.keys),
            "deployment_id": state.deployment_id,
            "dry_run": dry_run,
        }
        actions = []
        if config.database.created:
            actions.append(f"D1 데이터베이스 생성됨: {config.database.name}")
        if config.secrets.keys and not config.secrets.reused:
            actions.append(f"워커 시크릿 {len(config.secrets.keys)}개 배포됨")
        verb = "dry-run 빌드" if dry_run else "배포"
        actions.append(f"wrangler deploy 로 {config.worker.name or '(worker)'} {verb}")
        self.confirm("Deployment confirmation", summary, actions, f"{config.domain} 에 {verb}할까요?")

    def confirm_dangerous(self, action: str, warning: str) -> None:
        """기본값이 '아니오' 인 파괴적 작업 확인. 자동 승인 모드에서도 감사 로그는 남긴다."""
        self.confirm(
            "Dangerous action",
            {"action": action, "warning": warning},
            [action],
            f"정말로 진행할까요? ({action})",
            default=False,
        )
