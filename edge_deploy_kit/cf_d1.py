"""
cf_d1
-----

D1 데이터베이스 확인/생성/재사용/교체 워크플로.

- 없으면 만들고, 삭제용 보상 작업(delete-resource)을 하나 등록한다.
- 있으면 재사용 / 다른 이름으로 생성 / 삭제 후 재생성 중에서 고른다.
  삭제 후 재생성은 기본값 "아니오"인 별도 확인을 거치며,
  지워진 원본은 되돌릴 수 없으므로 새 리소스에 대해서만 보상 작업을 등록한다.
- 비대화형 모드에서는 기존 데이터베이스를 항상 재사용한다.
"""

from __future__ import annotations

import re
from typing import Optional

from .confirmation import ConfirmationGate
from .errors import EdgeDeployError, ResourceConflictError, UserCancelledError
from .local_state import domain_slug
from .logging_utils import get_logger
from .models import DatabaseConfig
from .prompts import OperatorInterface
from .rollback import DELETE_RESOURCE, RollbackAction, RollbackRegistry
from .wrangler import D1Database, WranglerCLI


logger = get_logger(__name__)

CHOICE_REUSE = "기존 데이터베이스 재사용 (권장)"
CHOICE_NEW_NAME = "다른 이름으로 새로 생성"
CHOICE_RECREATE = "삭제 후 다시 생성 (데이터가 모두 사라집니다)"
EXISTING_CHOICES = (CHOICE_REUSE, CHOICE_NEW_NAME, CHOICE_RECREATE)

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
MAX_NAME_ATTEMPTS = 5


def default_database_name(domain: str) -> str:
    return f"{domain_slug(domain)}-auth-db"


class DatabaseProvisioningWorkflow:
    def __init__(
        self,
        wrangler: WranglerCLI,
        operator: OperatorInterface,
        rollback: RollbackRegistry,
        audit=None,  # noqa: ANN001
        *,
        deployment_id: Optional[str] = None,
    ) -> None:
        self.wrangler = wrangler
        self.operator = operator
        self.rollback = rollback
        self.audit = audit
        self.deployment_id = deployment_id

    def _record(self, event_type: str, domain: str, **details) -> None:  # noqa: ANN003
        if self.audit is not None:
            self.audit.record(event_type, domain, details, deployment_id=self.deployment_id)

    def handle_database_setup(
        self,
        domain: str,
        environment: str,
        suggested_name: Optional[str] = None,
    ) -> DatabaseConfig:
        name = suggested_name or default_database_name(domain)
        if self.operator.interactive:
            self.operator.show(f"데이터베이스 이름: {name}")
            if not self.operator.confirm("이 데이터베이스 이름을 사용할까요?", default=True):
                name = self._ask_name(default=name)
        return self._provision(domain, environment, name, depth=0)

    def _ask_name(self, default: Optional[str] = None) -> str:
        for _ in range(MAX_NAME_ATTEMPTS):
            name = self.operator.ask_text("데이터베이스 이름을 입력하세요", default=default).strip()
            if _NAME_RE.match(name):
                return name
            self.operator.show(f"사용할 수 없는 이름입니다: {name!r} (영문/숫자/-/_ 만 가능)")
        raise ResourceConflictError(
            default or "(unnamed)",
            "올바른 데이터베이스 이름을 입력받지 못했습니다.",
            phase="database",
        )

    def _provision(self, domain: str, environment: str, name: str, depth: int) -> DatabaseConfig:
        if depth > MAX_NAME_ATTEMPTS:
            raise ResourceConflictError(
                name,
                "사용 가능한 데이터베이스 이름을 정하지 못했습니다.",
                phase="database",
            )

        logger.info("D1 데이터베이스 확인: %s", name)
        existing = self.wrangler.d1_find(name)
        if existing is None:
            return self._create(domain, environment, name)

        if not self.operator.interactive:
            logger.info("기존 데이터베이스를 재사용합니다 (비대화형): %s (%s)", name, existing.id)
            return self._reuse(domain, existing)

        self.operator.show(f"데이터베이스가 이미 있습니다: {existing.name} ({existing.id})")
        choice = self.operator.choose("어떻게 할까요?", EXISTING_CHOICES, default_index=0)
        if choice == 0:
            return self._reuse(domain, existing)
        if choice == 1:
            new_name = self._ask_name(default=f"{name}-{environment}")
            return self._provision(domain, environment, new_name, depth + 1)
        if choice == 2:
            return self._recreate(domain, environment, existing)
        raise ResourceConflictError(name, phase="database")

    def _reuse(self, domain: str, existing: D1Database) -> DatabaseConfig:
        self._record("DATABASE_REUSED", domain, name=existing.name, id=existing.id)
        return DatabaseConfig(name=existing.name, id=existing.id, created=False, reused=True)

    def _create(self, domain: str, environment: str, name: str, *, ask: bool = True) -> DatabaseConfig:
        if ask and self.operator.interactive and not self.operator.confirm(
            f"D1 데이터베이스 '{name}' 을(를) 새로 만들까요?", default=True
        ):
            raise UserCancelledError(f"데이터베이스 생성 ({name})", phase="database")

        db_id = self.wrangler.d1_create(name)
        logger.info("D1 데이터베이스 생성 완료: %s (%s)", name, db_id)
        self.rollback.register(
            RollbackAction(
                type=DELETE_RESOURCE,
                target=name,
                command=self.wrangler.d1_delete_command(name),
                description=f"D1 데이터베이스 삭제: {name}",
                environment=environment,
            )
        )
        self._record("DATABASE_CREATED", domain, name=name, id=db_id, environment=environment)
        return DatabaseConfig(name=name, id=db_id, created=True, reused=False)

    def _recreate(self, domain: str, environment: str, existing: D1Database) -> DatabaseConfig:
        gate = ConfirmationGate(self.operator, self.audit, deployment_id=self.deployment_id)
        try:
            gate.confirm_dangerous(
                f"D1 데이터베이스 삭제 후 재생성: {existing.name} ({existing.id})",
                f"'{existing.name}' 의 모든 데이터가 삭제되며 되돌릴 수 없습니다.",
            )
        except UserCancelledError as e:
            raise ResourceConflictError(
                existing.name,
                f"데이터베이스 삭제가 취소되었습니다: {existing.name}",
                phase="database",
                remediation="재사용하거나 다른 이름을 선택하세요",
            ) from e

        try:
            self.wrangler.d1_delete(existing.name)
        except EdgeDeployError:
            logger.error("D1 데이터베이스 삭제 실패: %s", existing.name)
            raise
        # 원본은 복구할 수 없으므로 보상 작업 없이 보안 이벤트로만 남긴다.
        self._record("DATABASE_DELETED", domain, name=existing.name, id=existing.id)
        if self.audit is not None:
            self.audit.log_security_event(
                self.deployment_id,
                "irreversible-database-deletion",
                {"name": existing.name, "id": existing.id, "environment": environment},
            )
        return self._create(domain, environment, existing.name, ask=False)
