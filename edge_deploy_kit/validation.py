"""
validation
----------

배포 전 6단계 검증 파이프라인.

1. prerequisites  : 필요한 명령(node, npx, wrangler)과 최소 Node.js 버전
2. authentication : wrangler 인증 상태 (npm 보조 인증은 경고만)
3. network        : 설정된 엔드포인트 도달 가능 여부
4. configuration  : 매니페스트 필수 키와 D1 바인딩이 원격 상태와 맞는지
5. endpoints      : 운영 중인 서비스의 /health (첫 배포면 건너뜀)
6. readiness      : 디스크/메모리 여유와 `wrangler deploy --dry-run`

앞 단계가 치명적으로 실패하면 뒤 단계는 실행하지 않는다.
결과는 성공/실패/건너뜀 모두 감사 로그에 남긴다.
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import httpx

from .cf_api import TRANSIENT_HTTP_ERRORS
from .config import KitConfig
from .discovery import ManifestInfo
from .errors import BindingMismatchError, CommandExecutionError, ValidationPhaseError
from .executor import DeployOptions, build_deploy_args
from .logging_utils import get_logger
from .models import (
    VALIDATION_ORDER,
    Credentials,
    ValidationCategory,
    ValidationResult,
    ValidationStatus,
)
from .subprocess_utils import RunResult, retry_call, run_command
from .wrangler import WranglerCLI, extract_warnings


logger = get_logger(__name__)

_NODE_VERSION_RE = re.compile(r"v?(\d+)\.(\d+)")

BINDING_REMEDIATION = {
    "not found": '"wrangler d1 list" 로 사용 가능한 데이터베이스 이름을 확인하거나 "wrangler d1 create <name>" 으로 만드세요',
    "id mismatch": "wrangler.toml 의 database_id 를 \"wrangler d1 list\" 결과와 맞추세요",
    "missing binding name": "wrangler.toml [[d1_databases]] 항목에 binding 을 채우세요",
    "missing database_name": "wrangler.toml [[d1_databases]] 항목에 database_name 을 채우세요",
}


@dataclass
class ValidationContext:
    domain: str
    environment: str
    credentials: Optional[Credentials] = None
    manifest: Optional[ManifestInfo] = None
    first_deployment: bool = False
    live_url: Optional[str] = None
    strict: bool = False
    skip: FrozenSet[ValidationCategory] = frozenset()
    tolerate: FrozenSet[ValidationCategory] = frozenset()
    environ: Dict[str, str] = field(default_factory=dict)


def available_memory_bytes() -> Optional[int]:
    try:
        return os.sysconf("SC_AVPHYS_PAGES") * os.sysconf("SC_PAGE_SIZE")
    except (ValueError, OSError, AttributeError):
        return None


def check_bindings(manifest: ManifestInfo, remote: Dict[str, str]) -> List[BindingMismatchError]:
    """remote: 데이터베이스 이름 -> ID"""
    issues: List[BindingMismatchError] = []
    remote_ids = set(remote.values())
    for b in manifest.d1_bindings:
        label = b.binding or b.database_name or "(unnamed)"
        if not b.binding:
            reason = "missing binding name"
        elif not b.database_name:
            reason = "missing database_name"
        elif b.database_name in remote:
            if b.database_id and remote[b.database_name] != b.database_id:
                reason = "id mismatch"
            else:
                continue
        elif b.database_id and b.database_id in remote_ids:
            continue
        else:
            reason = "not found"
        issues.append(BindingMismatchError(label, reason, remediation=BINDING_REMEDIATION[reason]))
    return issues


class ValidationPipeline:
    def __init__(
        self,
        wrangler: WranglerCLI,
        config: KitConfig,
        audit=None,  # noqa: ANN001
        *,
        deployment_id: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        runner: Callable[..., RunResult] = run_command,
        disk_usage: Callable[[str], Any] = shutil.disk_usage,
        memory_probe: Callable[[], Optional[int]] = available_memory_bytes,
    ) -> None:
        self.wrangler = wrangler
        self.config = config
        self.audit = audit
        self.deployment_id = deployment_id
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=config.network_timeout, follow_redirects=True)
        self._which = which
        self._runner = runner
        self._disk_usage = disk_usage
        self._memory_probe = memory_probe
        self.results: List[ValidationResult] = []
        self._checks: Dict[ValidationCategory, Callable[[ValidationContext], ValidationResult]] = {
            ValidationCategory.PREREQUISITES: self.check_prerequisites,
            ValidationCategory.AUTHENTICATION: self.check_authentication,
            ValidationCategory.NETWORK: self.check_network,
            ValidationCategory.CONFIGURATION: self.check_configuration,
            ValidationCategory.ENDPOINTS: self.check_endpoints,
            ValidationCategory.READINESS: self.check_readiness,
        }

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def run(self, ctx: ValidationContext) -> List[ValidationResult]:
        self.results = []
        skip = set(ctx.skip)
        if ctx.first_deployment or not ctx.live_url:
            skip.add(ValidationCategory.ENDPOINTS)

        for category in VALIDATION_ORDER:
            if category in skip:
                reason = "첫 배포" if category is ValidationCategory.ENDPOINTS and ctx.first_deployment else "건너뜀"
                result = ValidationResult(category, ValidationStatus.SKIPPED, details={"reason": reason})
            else:
                logger.info("검증 단계: %s", category.value)
                result = self._checks[category](ctx)
            self.results.append(result)
            self._record(ctx, result)

            for warning in result.warnings:
                logger.warning("[%s] %s", category.value, warning)

            if result.failed:
                if category in ctx.tolerate:
                    logger.warning("[%s] 실패했지만 이 컨텍스트에서는 계속 진행합니다.", category.value)
                    continue
                raise ValidationPhaseError(
                    category.value,
                    result.errors,
                    results=list(self.results),
                    remediation=result.details.get("remediation"),
                )
        return list(self.results)

    def _record(self, ctx: ValidationContext, result: ValidationResult) -> None:
        if self.audit is None:
            return
        event_type = {
            ValidationStatus.PASSED: "VALIDATION_PASSED",
            ValidationStatus.FAILED: "VALIDATION_ERROR",
            ValidationStatus.SKIPPED: "VALIDATION_SKIPPED",
        }[result.status]
        self.audit.record(event_type, ctx.domain, result.to_dict(), deployment_id=self.deployment_id)

    def _retry(self, func, description: str):  # noqa: ANN001, ANN202
        return retry_call(
            func,
            attempts=self.config.retry_attempts,
            delay=self.config.retry_delay,
            retry_on=TRANSIENT_HTTP_ERRORS,
            description=description,
        )

    # ------------------------------------------------------------------
    # 1. prerequisites
    # ------------------------------------------------------------------

    def check_prerequisites(self, ctx: ValidationContext) -> ValidationResult:
        result = ValidationResult(ValidationCategory.PREREQUISITES)
        missing = [cmd for cmd in self.config.required_commands if not self._which(cmd)]
        for cmd in missing:
            result.error(f"필요한 명령을 찾을 수 없습니다: {cmd}")
        if missing:
            result.details["remediation"] = "Node.js(https://nodejs.org) 를 설치하고 PATH 를 확인하세요"
            return result

        if self.config.min_node_major > 0 and self._which("node"):
            try:
                out = self._runner(["node", "--version"], timeout=self.config.command_timeout).output
            except CommandExecutionError as e:
                result.error(f"node --version 실행 실패: {e}")
                return result
            match = _NODE_VERSION_RE.search(out)
            if not match:
                result.warn(f"Node.js 버전을 해석하지 못했습니다: {out.strip()!r}")
            else:
                major = int(match.group(1))
                result.details["node"] = match.group(0)
                if major < self.config.min_node_major:
                    result.error(
                        f"Node.js {self.config.min_node_major} 이상이 필요합니다 (현재 {match.group(0)})"
                    )
                    result.details["remediation"] = "Node.js 를 최신 LTS 로 업그레이드하세요"

        try:
            result.details["wrangler"] = self.wrangler.version()
        except CommandExecutionError as e:
            result.error(f"wrangler 를 실행할 수 없습니다: {e.message}")
            result.details["remediation"] = "npm install -D wrangler 로 설치하세요"
        return result

    # ------------------------------------------------------------------
    # 2. authentication
    # ------------------------------------------------------------------

    def check_authentication(self, ctx: ValidationContext) -> ValidationResult:
        result = ValidationResult(ValidationCategory.AUTHENTICATION)
        if ctx.credentials is None:
            result.error("Cloudflare 접근 정보가 없습니다.")
            return result

        try:
            who = self.wrangler.whoami()
        except CommandExecutionError as e:
            result.error(f"wrangler whoami 실패: {e.message}")
            result.details["remediation"] = "API 토큰 권한을 확인하거나 `wrangler login` 을 실행하세요"
            return result

        if not who.authenticated:
            result.error("wrangler 가 인증되지 않았습니다.")
            result.details["remediation"] = "CLOUDFLARE_API_TOKEN 을 설정하거나 `wrangler login` 을 실행하세요"
            return result
        result.details["email"] = who.email
        if who.account_ids and ctx.credentials.account_id not in who.account_ids:
            result.warn(
                f"선택한 계정({ctx.credentials.account_id})이 wrangler 계정 목록에 없습니다."
            )

        # 보조 인증(npm)은 없어도 배포에는 지장이 없다.
        if self._which("npm"):
            try:
                self._runner(["npm", "whoami"], timeout=self.config.command_timeout)
            except CommandExecutionError:
                result.warn("npm 에 로그인되어 있지 않습니다 (비공개 패키지 설치 시 필요).")
        return result

    # ------------------------------------------------------------------
    # 3. network
    # ------------------------------------------------------------------

    def check_network(self, ctx: ValidationContext) -> ValidationResult:
        result = ValidationResult(ValidationCategory.NETWORK)
        reachable: List[str] = []
        for url in self.config.network_endpoints:
            try:
                self._retry(lambda url=url: self._http.head(url), f"HEAD {url}")
                reachable.append(url)
            except httpx.HTTPError as e:
                result.error(f"엔드포인트에 연결할 수 없습니다: {url} ({type(e).__name__})")
        result.details["reachable"] = reachable
        if result.failed:
            result.details["remediation"] = "네트워크, 방화벽, 프록시(HTTPS_PROXY) 설정을 확인하세요"
        return result

    # ------------------------------------------------------------------
    # 4. configuration
    # ------------------------------------------------------------------

    def check_configuration(self, ctx: ValidationContext) -> ValidationResult:
        result = ValidationResult(ValidationCategory.CONFIGURATION)
        manifest = ctx.manifest
        if manifest is None:
            message = "wrangler.toml 을 찾지 못했습니다. wrangler 기본값으로 배포합니다."
            if ctx.strict:
                result.error(message)
                result.details["remediation"] = "프로젝트 루트나 config/ 에 wrangler.toml 을 두세요"
            else:
                result.warn(message)
            return result

        result.details["manifest"] = manifest.config_path
        if not manifest.parsed:
            result.error(f"{manifest.config_path} 를 해석할 수 없습니다: {manifest.parse_error}")
            return result
        if manifest.name_source != "manifest":
            result.error(f"{manifest.config_path} 에 name 키가 없습니다.")
        if not manifest.compatibility_date:
            result.error(f"{manifest.config_path} 에 compatibility_date 키가 없습니다.")
        if result.failed or not manifest.d1_bindings:
            return result

        try:
            remote = {db.name: db.id for db in self.wrangler.d1_list()}
        except CommandExecutionError as e:
            message = f"원격 D1 목록을 조회하지 못해 바인딩 확인을 건너뜁니다: {e.message}"
            if ctx.strict:
                result.error(message)
            else:
                result.warn(message)
            return result

        issues = check_bindings(manifest, remote)
        result.details["bindings"] = [
            {"binding": i.binding, "reason": i.reason} for i in issues
        ]
        for issue in issues:
            text = f"{issue.message} - {issue.remediation}"
            if ctx.strict:
                result.error(text)
            else:
                result.warn(text)
        if issues and ctx.strict:
            result.details["remediation"] = issues[0].remediation
        return result

    # ------------------------------------------------------------------
    # 5. endpoints
    # ------------------------------------------------------------------

    def check_endpoints(self, ctx: ValidationContext) -> ValidationResult:
        result = ValidationResult(ValidationCategory.ENDPOINTS)
        url = (ctx.live_url or "").rstrip("/") + "/health"
        try:
            response = self._retry(lambda: self._http.get(url), f"GET {url}")
        except httpx.HTTPError as e:
            result.error(f"헬스 체크 요청 실패: {url} ({type(e).__name__})")
            return result
        result.details["health"] = {"url": url, "status": response.status_code}
        if response.status_code >= 400:
            result.error(f"헬스 체크 실패: {url} (HTTP {response.status_code})")
        return result

    # ------------------------------------------------------------------
    # 6. readiness
    # ------------------------------------------------------------------

    def check_readiness(self, ctx: ValidationContext) -> ValidationResult:
        result = ValidationResult(ValidationCategory.READINESS)

        usage = self._disk_usage(self.config.base_dir)
        free_mb = usage.free // (1024 * 1024)
        result.details["free_disk_mb"] = free_mb
        if free_mb < self.config.min_free_disk_mb:
            result.error(f"디스크 여유 공간이 부족합니다: {free_mb}MB < {self.config.min_free_disk_mb}MB")

        memory = self._memory_probe()
        if memory is None:
            result.warn("이 플랫폼에서는 가용 메모리를 확인할 수 없습니다.")
        else:
            free_mem_mb = memory // (1024 * 1024)
            result.details["free_memory_mb"] = free_mem_mb
            if free_mem_mb < self.config.min_free_memory_mb:
                result.error(
                    f"가용 메모리가 부족합니다: {free_mem_mb}MB < {self.config.min_free_memory_mb}MB"
                )

        if result.failed:
            return result

        args = build_deploy_args(ctx.manifest, ctx.environment, DeployOptions(dry_run=True), ctx.environ)
        try:
            dry = self.wrangler.run(args, timeout=self.config.deploy_timeout)
        except CommandExecutionError as e:
            result.error(f"빌드 dry-run 실패: {e.message}")
            result.details["output"] = e.output[-2000:]
            result.details["remediation"] = "`npx wrangler deploy --dry-run` 을 직접 실행해 오류를 확인하세요"
            return result
        for warning in extract_warnings(dry.output):
            result.warn(f"dry-run: {warning}")
        return result
