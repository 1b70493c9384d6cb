from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Optional, List

from dotenv import load_dotenv


ENV_FILES_DEFAULT_ORDER = [".env", ".env.deploy", ".env.secrets"]

DEFAULT_NETWORK_ENDPOINTS = [
    "https://api.cloudflare.com",
    "https://registry.npmjs.org",
]
DEFAULT_VERIFY_PATHS = ["/health", "/", "/api"]
AUDIT_FORMATS = ("json", "text", "csv")


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y"}


def _get_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return list(default)
    return [p.strip() for p in raw.split(",") if p.strip()]


@dataclass
class KitConfig:
    """
    배포 도구 자체의 동작 설정(경로, 타임아웃, 재시도, 검증 임계값).
    배포 대상(domain/environment)은 CLI 인자로 받으며 여기에는 없다.
    """

    base_dir: str = "."
    state_dir: str = ".edge-deploy"
    audit_dir: Optional[str] = None
    reports_dir: Optional[str] = None
    audit_formats: List[str] = field(default_factory=lambda: list(AUDIT_FORMATS))
    audit_max_log_bytes: int = 100 * 1024 * 1024
    audit_retention_days: int = 90
    secrets_dir: str = "secrets"

    wrangler_command: List[str] = field(default_factory=lambda: ["npx", "wrangler"])

    # 타임아웃(초)
    deploy_timeout: float = 300.0
    command_timeout: float = 60.0
    network_timeout: float = 10.0

    # 일시적 오류(네트워크/인증 probe)에만 적용되는 재시도
    retry_attempts: int = 3
    retry_delay: float = 2.0

    # 검증
    required_commands: List[str] = field(default_factory=lambda: ["node", "npx"])
    min_node_major: int = 16
    network_endpoints: List[str] = field(default_factory=lambda: list(DEFAULT_NETWORK_ENDPOINTS))
    min_free_disk_mb: int = 100
    min_free_memory_mb: int = 128
    strict_bindings: bool = False

    # 정책/토글
    auto_rollback: bool = False
    generate_secret_distribution: bool = True
    verify_paths: List[str] = field(default_factory=lambda: list(DEFAULT_VERIFY_PATHS))

    def path(self, *parts: str) -> str:
        return os.path.join(self.base_dir, *parts)

    @property
    def state_path(self) -> str:
        return self.path(self.state_dir)

    @property
    def audit_path(self) -> str:
        return self.path(self.audit_dir) if self.audit_dir else os.path.join(self.state_path, "audit-logs")

    @property
    def reports_path(self) -> str:
        if self.reports_dir:
            return self.path(self.reports_dir)
        return os.path.join(self.state_path, "audit-reports")

    @property
    def secrets_path(self) -> str:
        return self.path(self.secrets_dir)

    @property
    def token_cache_path(self) -> str:
        return os.path.join(self.state_path, "cache", "api-tokens.json")

    @property
    def rollback_path(self) -> str:
        return os.path.join(self.state_path, "rollback")

    @classmethod
    def from_env(cls, base_dir: str = ".") -> "KitConfig":
        invalid: List[str] = []

        def num(name: str, default: float, cast=float):  # noqa: ANN001, ANN202
            raw = os.getenv(name)
            if raw is None or raw.strip() == "":
                return cast(default)
            try:
                value = cast(raw)
            except ValueError:
                invalid.append(name)
                return cast(default)
            if value < 0:
                invalid.append(name)
                return cast(default)
            return value

        formats = _get_list("AUDIT_FORMATS", list(AUDIT_FORMATS))
        unknown_formats = [f for f in formats if f not in AUDIT_FORMATS]
        if unknown_formats:
            invalid.append("AUDIT_FORMATS")

        cfg = cls(
            base_dir=base_dir,
            state_dir=os.getenv("EDGE_STATE_DIR", ".edge-deploy"),
            audit_dir=os.getenv("AUDIT_DIR") or None,
            reports_dir=os.getenv("AUDIT_REPORTS_DIR") or None,
            audit_formats=formats,
            audit_max_log_bytes=num("AUDIT_MAX_LOG_BYTES", 100 * 1024 * 1024, int),
            audit_retention_days=num("AUDIT_RETENTION_DAYS", 90, int),
            secrets_dir=os.getenv("SECRETS_DIR", "secrets"),
            wrangler_command=shlex.split(os.getenv("WRANGLER_COMMAND", "npx wrangler")),
            deploy_timeout=num("DEPLOY_TIMEOUT", 300.0),
            command_timeout=num("COMMAND_TIMEOUT", 60.0),
            network_timeout=num("NETWORK_TIMEOUT", 10.0),
            retry_attempts=max(num("RETRY_ATTEMPTS", 3, int), 1),
            retry_delay=num("RETRY_DELAY", 2.0),
            required_commands=_get_list("REQUIRED_COMMANDS", ["node", "npx"]),
            min_node_major=num("MIN_NODE_MAJOR", 16, int),
            network_endpoints=_get_list("NETWORK_ENDPOINTS", DEFAULT_NETWORK_ENDPOINTS),
            min_free_disk_mb=num("MIN_FREE_DISK_MB", 100, int),
            min_free_memory_mb=num("MIN_FREE_MEMORY_MB", 128, int),
            strict_bindings=_get_bool("STRICT_BINDINGS", False),
            auto_rollback=_get_bool("AUTO_ROLLBACK", False),
            generate_secret_distribution=_get_bool("GENERATE_SECRET_DISTRIBUTION", True),
            verify_paths=_get_list("VERIFY_PATHS", DEFAULT_VERIFY_PATHS),
        )

        if invalid:
            raise ValueError(
                "환경변수 값이 올바르지 않습니다: " + ", ".join(sorted(set(invalid)))
            )
        if not cfg.wrangler_command:
            raise ValueError("WRANGLER_COMMAND 가 비어 있습니다.")

        return cfg
