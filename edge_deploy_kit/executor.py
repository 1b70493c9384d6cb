"""
executor
--------

`wrangler deploy` 실행과 결과 URL 추출.

명령 구성
- --config: 루트 wrangler.toml 이 아닌 매니페스트를 쓸 때
- --env: 매니페스트에 [env.<env>] 섹션이 있거나 production 이 아닐 때
- --var KEY:VALUE: 허용 목록에 있는 환경변수만 전달한다. 프로세스 환경 전체는 넘기지 않는다.

배포 명령은 재시도하지 않는다. 실패/시간 초과는 CommandExecutionError(출력 포함)로 올라간다.

URL 은 순서가 있는 순수 함수 전략들로 찾는다. 모두 실패해도 배포는 성공이며 url 은 None 이다.
"""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

from .discovery import ManifestInfo, ResourceDiscovery
from .errors import EdgeDeployError
from .logging_utils import get_logger
from .models import DeploymentConfig, utc_now
from .wrangler import WranglerCLI


logger = get_logger(__name__)

DEFAULT_SUBDOMAIN = "workers.dev"

PLATFORM_VARS = ("CLOUDFLARE_ACCOUNT_ID", "CLOUDFLARE_ZONE_ID", "CF_ACCOUNT_ID")
SERVICE_VARS = (
    "SERVICE_DOMAIN",
    "SERVICE_NAME",
    "NODE_ENV",
    "ENVIRONMENT",
    "LOG_LEVEL",
    "CORS_ORIGINS",
    "DATA_SERVICE_URL",
    "AUTH_SERVICE_URL",
    "CONTENT_STORE_SERVICE_URL",
    "FRONTEND_URL",
    "MAGIC_LINK_EXPIRY_MINUTES",
    "RATE_LIMIT_WINDOW_MS",
    "RATE_LIMIT_MAX",
    "MAX_FILE_SIZE",
    "ALLOWED_FILE_TYPES",
    "SKIP_WEBHOOK_AUTH",
)


@dataclass
class DeployOptions:
    dry_run: bool = False
    vars: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    extra_args: List[str] = field(default_factory=list)


@dataclass
class DeploymentResult:
    success: bool
    url: Optional[str]
    environment: str
    duration: float
    deployment_id: Optional[str]
    output: str
    command: List[str]
    dry_run: bool = False
    worker_name: Optional[str] = None
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())


def allowed_var_names(environment: str) -> List[str]:
    prefix = environment.upper().replace("-", "_")
    return [*PLATFORM_VARS, *SERVICE_VARS, f"{prefix}_URL", f"{prefix}_DOMAIN"]


def collect_forwarded_vars(
    environment: str,
    environ: Mapping[str, str],
    extra: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    forwarded = {
        name: environ[name]
        for name in allowed_var_names(environment)
        if environ.get(name)
    }
    forwarded.update({k: v for k, v in (extra or {}).items() if v is not None})
    return forwarded


def needs_env_flag(manifest: Optional[ManifestInfo], environment: str) -> bool:
    if manifest is not None and manifest.has_environment_sections:
        return True
    return environment != "production"


def build_deploy_args(
    manifest: Optional[ManifestInfo],
    environment: str,
    options: DeployOptions,
    environ: Mapping[str, str],
) -> List[str]:
    """wrangler 기본 명령 뒤에 붙일 인자 목록."""
    args = ["deploy"]
    if manifest is not None and not manifest.is_default_path:
        args += ["--config", manifest.config_path]
    if needs_env_flag(manifest, environment):
        args += ["--env", environment]
    if options.dry_run:
        args.append("--dry-run")
    for key, value in sorted(collect_forwarded_vars(environment, environ, options.vars).items()):
        args += ["--var", f"{key}:{value}"]
    args += list(options.extra_args)
    return args


# ---------------------------------------------------------------------------
# URL 추출 전략
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UrlContext:
    environment: str
    worker_name: Optional[str] = None
    routes: Sequence[str] = ()


_URL_RE = re.compile(r"https://[^\s'\"<>()]+")
_ANNOUNCEMENT_RES = (
    re.compile(r"Deployed to:\s*(https://\S+)", re.I),
    re.compile(r"Your worker has been deployed to:\s*(https://\S+)", re.I),
    re.compile(r"Worker URL:\s*(https://\S+)", re.I),
    re.compile(r"Available at:\s*(https://\S+)", re.I),
    re.compile(r"Published\s+\S+.*?\n\s*(https://\S+)", re.I),
)
_KEYWORDS = ("deployed", "published", DEFAULT_SUBDOMAIN)


def _clean(url: str) -> str:
    return url.strip().rstrip(">.,;)").rstrip("/")


def _host_matches(host: str, token: str) -> bool:
    """token 이 호스트의 도메인 접미사이거나, 라벨 하나 또는 '-' 로 나뉜 라벨 조각과 일치하는지."""
    if not token:
        return False
    if "." in token:
        return host == token or host.endswith("." + token)
    for label in host.split("."):
        if label == token or label.startswith(token + "-") or label.endswith("-" + token):
            return True
    return False


def is_plausible_deployment_url(url: str, ctx: UrlContext) -> bool:
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.hostname:
        return False
    host = parsed.hostname.lower()
    tokens = [DEFAULT_SUBDOMAIN, ctx.environment.lower()]
    if ctx.worker_name:
        tokens.append(ctx.worker_name.lower())
    return any(_host_matches(host, token) for token in tokens)


def url_from_announcement(output: str, ctx: UrlContext) -> Optional[str]:
    for pattern in _ANNOUNCEMENT_RES:
        for match in pattern.finditer(output):
            candidate = _clean(match.group(1))
            if is_plausible_deployment_url(candidate, ctx):
                return candidate
    for match in _URL_RE.finditer(output):
        candidate = _clean(match.group(0))
        if is_plausible_deployment_url(candidate, ctx):
            return candidate
    return None


def url_from_routes(output: str, ctx: UrlContext) -> Optional[str]:
    for route in ctx.routes:
        pattern = route.strip()
        if not pattern or pattern.startswith("*"):
            continue
        if "://" not in pattern:
            pattern = "https://" + pattern
        parsed = urlparse(pattern)
        if parsed.scheme != "https" or not parsed.hostname or "*" in parsed.hostname:
            continue
        return f"https://{parsed.hostname}"
    return None


def url_from_worker_name(output: str, ctx: UrlContext) -> Optional[str]:
    if not ctx.worker_name:
        return None
    if "." in ctx.worker_name:
        return f"https://{ctx.worker_name}"
    return f"https://{ctx.worker_name}.{DEFAULT_SUBDOMAIN}"


def url_from_keyword_lines(output: str, ctx: UrlContext) -> Optional[str]:
    env_re = re.compile(rf"\b{re.escape(ctx.environment.lower())}\b") if ctx.environment else None
    for line in output.splitlines():
        lowered = line.lower()
        if "https://" not in lowered:
            continue
        if not any(k in lowered for k in _KEYWORDS) and not (env_re and env_re.search(lowered)):
            continue
        match = _URL_RE.search(line)
        if match:
            return _clean(match.group(0))
    return None


UrlStrategy = Callable[[str, UrlContext], Optional[str]]
URL_STRATEGIES: Sequence[UrlStrategy] = (
    url_from_announcement,
    url_from_routes,
    url_from_worker_name,
    url_from_keyword_lines,
)


def extract_deployment_url(
    output: str,
    ctx: UrlContext,
    strategies: Sequence[UrlStrategy] = URL_STRATEGIES,
) -> Optional[str]:
    for strategy in strategies:
        url = strategy(output, ctx)
        if url:
            logger.debug("배포 URL 추출 (%s): %s", strategy.__name__, url)
            return url
    return None


# ---------------------------------------------------------------------------
# 실행
# ---------------------------------------------------------------------------

class DeploymentExecutor:
    def __init__(
        self,
        wrangler: WranglerCLI,
        discovery: ResourceDiscovery,
        *,
        timeout: float = 300.0,
        environ: Optional[Mapping[str, str]] = None,
        audit=None,  # noqa: ANN001
        deployment_id: Optional[str] = None,
        url_strategies: Sequence[UrlStrategy] = URL_STRATEGIES,
    ) -> None:
        self.wrangler = wrangler
        self.discovery = discovery
        self.timeout = timeout
        self.environ = environ if environ is not None else os.environ
        self.audit = audit
        self.deployment_id = deployment_id
        self.url_strategies = url_strategies

    def deploy(
        self,
        environment: str,
        options: Optional[DeployOptions] = None,
        config: Optional[DeploymentConfig] = None,
    ) -> DeploymentResult:
        options = options or DeployOptions()
        # dry-run 은 원격 리소스를 바꾸지 않으므로 미확정 설정도 허용한다.
        if config is not None and not options.dry_run and not config.is_resolved():
            raise EdgeDeployError(
                "리소스 식별자가 확정되지 않은 설정으로는 배포할 수 없습니다: "
                + ", ".join(config.unresolved()),
                phase="execute",
            )

        manifest = self.discovery.find_manifest(environment)
        worker_name = (config.worker.name if config is not None else None) or (
            manifest.worker_name if manifest else None
        )
        args = build_deploy_args(manifest, environment, options, self.environ)
        command = self.wrangler.command(*args)
        logger.info(
            "배포 시작: env=%s worker=%s manifest=%s%s",
            environment,
            worker_name or "(미정)",
            manifest.config_path if manifest else "(없음)",
            " (dry-run)" if options.dry_run else "",
        )

        started = time.monotonic()
        result = self.wrangler.run(
            args,
            stream_output=True,
            timeout=options.timeout if options.timeout is not None else self.timeout,
        )
        duration = time.monotonic() - started

        url = None
        if not options.dry_run:
            ctx = UrlContext(
                environment=environment,
                worker_name=worker_name,
                routes=tuple(manifest.routes) if manifest else (),
            )
            url = extract_deployment_url(result.output, ctx, self.url_strategies)
            if url is None:
                logger.warning("배포 URL 을 출력에서 찾지 못했습니다. (배포는 성공)")

        if self.audit is not None:
            self.audit.log_performance_metric(self.deployment_id, "deploy_duration", round(duration, 3))

        logger.info("배포 완료: %s (%.1fs)", url or "(URL 없음)", duration)
        return DeploymentResult(
            success=True,
            url=url,
            environment=environment,
            duration=duration,
            deployment_id=self.deployment_id,
            output=result.output,
            command=command,
            dry_run=options.dry_run,
            worker_name=worker_name,
        )
