"""
cf_secrets
----------

워커 시크릿 생성/보관/배포 워크플로.

- secrets/<domain>-secrets.json 에 이전에 만든 시크릿이 있으면 재사용 여부를 묻는다.
  재사용하면 원격 호출 없이 그대로 돌려준다.
- 새로 만들 때는 로컬에 먼저 저장한 뒤 키마다 `wrangler secret put` 으로 배포하고,
  성공한 키마다 delete-secret 보상 작업을 하나씩 등록한다.
- 배포 결과를 다른 서비스에 넘겨줄 배포 번들(.env, secrets.json, deploy-secrets.sh)은
  선택 단계이며 롤백 상태에 영향을 주지 않는다.
"""

from __future__ import annotations

import json
import os
import secrets
import shlex
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .errors import UserCancelledError
from .local_state import atomic_write_json, atomic_write_text, read_json
from .logging_utils import get_logger, register_sensitive_values
from .models import SecretsConfig, utc_now
from .prompts import OperatorInterface
from .rollback import DELETE_SECRET, RollbackAction, RollbackRegistry
from .wrangler import WranglerCLI


logger = get_logger(__name__)

METADATA_KEYS = ("domain", "environment", "generated", "note")


@dataclass(frozen=True)
class SecretSpec:
    name: str
    length: int
    description: str = ""


DEFAULT_SECRET_SPECS: Sequence[SecretSpec] = (
    SecretSpec("AUTH_JWT_SECRET", 64, "JWT 서명 키"),
    SecretSpec("X_SERVICE_KEY", 64, "서비스 간 인증 키"),
    SecretSpec("AUTH_SERVICE_API_KEY", 48, "인증 서비스 API 키"),
    SecretSpec("LOGGER_SERVICE_API_KEY", 48, "로깅 서비스 API 키"),
    SecretSpec("CONTENT_SKIMMER_API_KEY", 48, "콘텐츠 서비스 API 키"),
    SecretSpec("CROSS_DOMAIN_AUTH_KEY", 64, "교차 도메인 인증 키"),
    SecretSpec("WEBHOOK_SIGNATURE_KEY", 32, "웹훅 서명 키"),
    SecretSpec("FILE_ENCRYPTION_KEY", 64, "파일 암호화 키"),
    SecretSpec("SESSION_ENCRYPTION_KEY", 48, "세션 암호화 키"),
    SecretSpec("API_RATE_LIMIT_KEY", 32, "요청 제한 키"),
)


def generate_secrets(specs: Sequence[SecretSpec]) -> Dict[str, str]:
    """length 는 hex 문자열 길이다."""
    values = {spec.name: secrets.token_hex(max(spec.length // 2, 8)) for spec in specs}
    register_sensitive_values(values.values())
    return values


@dataclass
class StoredSecrets:
    path: str
    values: Dict[str, str]
    metadata: Dict[str, str]


class SecretStore:
    def __init__(self, secrets_dir: str) -> None:
        self.secrets_dir = secrets_dir

    def path_for(self, domain: str) -> str:
        return os.path.join(self.secrets_dir, f"{domain}-secrets.json")

    def load(self, domain: str) -> Optional[StoredSecrets]:
        path = self.path_for(domain)
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            logger.warning("시크릿 파일을 읽지 못했습니다: %s (%s)", path, e)
            return None
        if not isinstance(data, dict):
            return None
        values = {k: str(v) for k, v in data.items() if k not in METADATA_KEYS and v}
        if not values:
            return None
        register_sensitive_values(values.values())
        metadata = {k: str(data[k]) for k in METADATA_KEYS if k in data}
        return StoredSecrets(path=path, values=values, metadata=metadata)

    def save(self, domain: str, environment: str, values: Dict[str, str]) -> str:
        path = self.path_for(domain)
        payload: Dict[str, str] = {
            "domain": domain,
            "environment": environment,
            "generated": utc_now().isoformat(),
            "note": "자동 생성된 워커 시크릿입니다. 저장소에 커밋하지 마세요.",
        }
        payload.update(values)
        atomic_write_json(path, payload, mode=0o600)
        logger.info("시크릿을 로컬에 저장했습니다: %s", path)
        return path


def write_distribution(
    secrets_dir: str,
    domain: str,
    environment: str,
    values: Dict[str, str],
    *,
    worker_name: Optional[str] = None,
) -> str:
    """
    다른 서비스가 같은 시크릿을 쓸 수 있도록 배포 번들을 만든다.
    secrets/distribution/<domain>/{.env, secrets.json, deploy-secrets.sh}
    """
    target = os.path.join(secrets_dir, "distribution", domain)
    os.makedirs(target, exist_ok=True)

    env_lines = [f"# {domain} ({environment}) 시크릿 - 생성 {utc_now().isoformat()}"]
    env_lines += [f"{k}={v}" for k, v in sorted(values.items())]
    atomic_write_text(os.path.join(target, ".env"), "\n".join(env_lines) + "\n", mode=0o600)

    atomic_write_text(
        os.path.join(target, "secrets.json"),
        json.dumps(
            {"domain": domain, "environment": environment, "secrets": dict(sorted(values.items()))},
            indent=2,
        )
        + "\n",
        mode=0o600,
    )

    scope = f" --env {shlex.quote(environment)}"
    if worker_name:
        scope = f" --name {shlex.quote(worker_name)}" + scope
    script = ["#!/usr/bin/env sh", "set -e", f"# {domain} 워커에 시크릿을 등록한다.", ""]
    for key, value in sorted(values.items()):
        script.append(f"printf '%s' {shlex.quote(value)} | npx wrangler secret put {key}{scope}")
    atomic_write_text(os.path.join(target, "deploy-secrets.sh"), "\n".join(script) + "\n", mode=0o700)

    logger.info("시크릿 배포 번들을 만들었습니다: %s", target)
    return target


class SecretProvisioningWorkflow:
    def __init__(
        self,
        wrangler: WranglerCLI,
        operator: OperatorInterface,
        rollback: RollbackRegistry,
        store: SecretStore,
        audit=None,  # noqa: ANN001
        *,
        specs: Sequence[SecretSpec] = DEFAULT_SECRET_SPECS,
        generate_distribution: bool = True,
        deployment_id: Optional[str] = None,
    ) -> None:
        self.wrangler = wrangler
        self.operator = operator
        self.rollback = rollback
        self.store = store
        self.audit = audit
        self.specs = list(specs)
        self.generate_distribution = generate_distribution
        self.deployment_id = deployment_id

    def _record(self, event_type: str, domain: str, **details) -> None:  # noqa: ANN003
        if self.audit is not None:
            self.audit.record(event_type, domain, details, deployment_id=self.deployment_id)

    def handle_secret_management(
        self,
        domain: str,
        environment: str,
        worker_name: Optional[str],
        *,
        env_flag: Optional[bool] = None,
    ) -> SecretsConfig:
        """
        env_flag: wrangler 에 --env 를 붙일지 여부. None 이면 production 이 아닐 때만 붙인다.
        """
        existing = self.store.load(domain)
        if existing is not None:
            self.operator.show(
                f"기존 시크릿 {len(existing.values)}개를 찾았습니다: {existing.path}"
                f" (생성: {existing.metadata.get('generated', '알 수 없음')})"
            )
            if not self.operator.interactive or self.operator.confirm(
                "기존 시크릿을 재사용할까요?", default=True
            ):
                self._record("SECRET_REUSED", domain, keys=sorted(existing.values), file=existing.path)
                return SecretsConfig(
                    keys=dict(existing.values),
                    file=existing.path,
                    reused=True,
                    resolved=True,
                )

        values = generate_secrets(self.specs)
        path = self.store.save(domain, environment, values)
        self._record("SECRET_GENERATED", domain, keys=sorted(values), file=path)

        if self.operator.interactive and not self.operator.confirm(
            f"시크릿 {len(values)}개를 워커에 배포할까요?", default=True
        ):
            raise UserCancelledError("시크릿 배포", phase="secrets")

        use_env = env_flag if env_flag is not None else environment != "production"
        self._deploy(domain, environment if use_env else None, environment, worker_name, values)

        config = SecretsConfig(keys=values, file=path, reused=False, resolved=True)
        config.distribution_path = self._maybe_distribute(domain, environment, worker_name, values)
        return config

    def _deploy(
        self,
        domain: str,
        env_arg: Optional[str],
        environment: str,
        worker_name: Optional[str],
        values: Dict[str, str],
    ) -> List[str]:
        deployed: List[str] = []
        for key, value in values.items():
            logger.info("시크릿 배포: %s", key)
            # 실패하면 예외가 그대로 올라가며, 이미 배포된 키에 대한 보상 작업만 남는다.
            self.wrangler.secret_put(key, value, environment=env_arg, worker_name=worker_name)
            self.rollback.register(
                RollbackAction(
                    type=DELETE_SECRET,
                    target=key,
                    command=self.wrangler.secret_delete_command(
                        key, environment=env_arg, worker_name=worker_name
                    ),
                    description=f"워커 시크릿 삭제: {key}",
                    environment=environment,
                )
            )
            deployed.append(key)
            self._record("SECRET_DEPLOYED", domain, key=key, environment=environment)
        logger.info("시크릿 %d개 배포 완료", len(deployed))
        return deployed

    def _maybe_distribute(
        self,
        domain: str,
        environment: str,
        worker_name: Optional[str],
        values: Dict[str, str],
    ) -> Optional[str]:
        if not self.generate_distribution:
            return None
        if self.operator.interactive and not self.operator.confirm(
            "다른 서비스용 시크릿 배포 번들을 만들까요?", default=True
        ):
            return None
        try:
            return write_distribution(
                self.store.secrets_dir, domain, environment, values, worker_name=worker_name
            )
        except OSError as e:
            logger.warning("시크릿 배포 번들 생성 실패 (배포는 계속합니다): %s", e)
            return None
