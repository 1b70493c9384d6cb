"""
models
------

배포 한 번(세션)을 구성하는 데이터 모델과 설정 병합 함수.

- Credentials: 검증이 끝난 뒤에는 바뀌지 않는 원격 접근 정보
- DeploymentConfig: 각 워크플로가 조금씩 채워 나가는 배포 설정
- DeploymentState: 세션 동안 오케스트레이터가 단독으로 갱신하는 진행 상태
- ValidationResult: 검증 카테고리 하나의 결과

병합 규칙은 모든 설정 형태에서 동일하다: explicit > discovered > default.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, TypeVar

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def mask_token(token: str) -> str:
    if not token:
        return ""
    if len(token) <= 8:
        return "*" * len(token)
    return f"{token[:4]}…{token[-4:]}"


@dataclass(frozen=True)
class Credentials:
    token: str = field(repr=False)
    account_id: str
    zone_id: str
    zone_name: Optional[str] = None

    def to_audit_dict(self) -> Dict[str, Any]:
        return {
            "token": mask_token(self.token),
            "account_id": self.account_id,
            "zone_id": self.zone_id,
            "zone_name": self.zone_name,
        }


@dataclass
class WorkerConfig:
    name: Optional[str] = None
    url: Optional[str] = None


@dataclass
class DatabaseConfig:
    name: Optional[str] = None
    id: Optional[str] = None
    created: bool = False
    reused: bool = False

    @property
    def resolved(self) -> bool:
        return bool(self.name and self.id)


@dataclass
class SecretsConfig:
    keys: Dict[str, str] = field(default_factory=dict, repr=False)
    distribution_path: Optional[str] = None
    file: Optional[str] = None
    reused: bool = False
    resolved: bool = False


class FrozenConfigError(AttributeError):
    pass


@dataclass
class DeploymentConfig:
    domain: str
    environment: str = "production"
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)
    credentials: Optional[Credentials] = None
    _frozen: bool = field(default=False, repr=False, compare=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_frozen", False):
            raise FrozenConfigError(f"배포 실행 단계로 넘어간 설정은 수정할 수 없습니다: {name}")
        super().__setattr__(name, value)

    def freeze(self) -> "DeploymentConfig":
        object.__setattr__(self, "_frozen", True)
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def unresolved(self) -> List[str]:
        missing: List[str] = []
        if not self.database.resolved:
            missing.append("database")
        if not self.secrets.resolved:
            missing.append("secrets")
        if not self.worker.name:
            missing.append("worker.name")
        return missing

    def is_resolved(self) -> bool:
        return not self.unresolved()

    def to_audit_dict(self) -> Dict[str, Any]:
        """감사 로그용 요약. 시크릿 값과 토큰은 포함하지 않는다."""
        return {
            "domain": self.domain,
            "environment": self.environment,
            "worker": {"name": self.worker.name, "url": self.worker.url},
            "database": {
                "name": self.database.name,
                "id": self.database.id,
                "created": self.database.created,
                "reused": self.database.reused,
            },
            "secrets": {
                "keys": sorted(self.secrets.keys),
                "distribution_path": self.secrets.distribution_path,
                "reused": self.secrets.reused,
            },
            "credentials": self.credentials.to_audit_dict() if self.credentials else None,
        }


class DeploymentStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


def new_deployment_id(now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    stamp = now.strftime("%Y%m%dT%H%M%S%f")
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"deploy-{stamp}-{suffix}"


@dataclass
class DeploymentState:
    config: DeploymentConfig
    deployment_id: str = field(default_factory=new_deployment_id)
    start_time: datetime = field(default_factory=utc_now)
    current_phase: Optional[str] = None
    rollback_actions: List[Any] = field(default_factory=list)
    status: DeploymentStatus = DeploymentStatus.RUNNING
    end_time: Optional[datetime] = None
    failed_phase: Optional[str] = None
    completed_phases: List[str] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status is not DeploymentStatus.RUNNING

    def _finish(self, status: DeploymentStatus) -> None:
        if self.terminal:
            raise RuntimeError(f"이미 종료된 배포입니다: {self.deployment_id} ({self.status.value})")
        self.status = status
        self.end_time = utc_now()

    def mark_succeeded(self) -> None:
        self._finish(DeploymentStatus.SUCCEEDED)

    def mark_failed(self, phase: Optional[str]) -> None:
        self.failed_phase = phase
        self._finish(DeploymentStatus.FAILED)

    def mark_cancelled(self, phase: Optional[str]) -> None:
        self.failed_phase = phase
        self._finish(DeploymentStatus.CANCELLED)

    @property
    def duration(self) -> float:
        end = self.end_time or utc_now()
        return (end - self.start_time).total_seconds()


class ValidationCategory(str, Enum):
    PREREQUISITES = "prerequisites"
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    ENDPOINTS = "endpoints"
    READINESS = "readiness"


VALIDATION_ORDER = list(ValidationCategory)


class ValidationStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ValidationResult:
    category: ValidationCategory
    status: ValidationStatus = ValidationStatus.PASSED
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def error(self, message: str) -> None:
        self.errors.append(message)
        self.status = ValidationStatus.FAILED

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def failed(self) -> bool:
        return self.status is ValidationStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "status": self.status.value,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "details": dict(self.details),
        }


# ---------------------------------------------------------------------------
# 병합 함수 (explicit > discovered > default)
# ---------------------------------------------------------------------------

def first_set(*values: Optional[T]) -> Optional[T]:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def merge_worker(
    explicit: Optional[WorkerConfig],
    discovered: Optional[WorkerConfig],
    default: Optional[WorkerConfig] = None,
) -> WorkerConfig:
    layers = [explicit or WorkerConfig(), discovered or WorkerConfig(), default or WorkerConfig()]
    return WorkerConfig(
        name=first_set(*(w.name for w in layers)),
        url=first_set(*(w.url for w in layers)),
    )


def merge_database(
    explicit: Optional[DatabaseConfig],
    discovered: Optional[DatabaseConfig],
    default: Optional[DatabaseConfig] = None,
) -> DatabaseConfig:
    layers = [explicit or DatabaseConfig(), discovered or DatabaseConfig(), default or DatabaseConfig()]
    name = first_set(*(d.name for d in layers))
    # id 는 같은 이름을 가진 계층에서만 가져온다.
    db_id = first_set(*(d.id for d in layers if d.name == name))
    return DatabaseConfig(name=name, id=db_id)


def merge_credential_field(
    explicit: Optional[str],
    override: Optional[str],
    cached: Optional[str] = None,
) -> Optional[str]:
    return first_set(explicit, override, cached)

