"""
verifier
--------

배포 후 실제 엔드포인트 점검.

- smoke: /health 한 번 (HTTP < 400 이면 통과)
- comprehensive: VERIFY_PATHS 의 각 경로 (/health 는 < 400, 나머지는 < 500 이면 통과)

점검 실패는 배포를 되돌리지 않는다. 결과는 종료 코드와 요약에만 반영되며,
어떤 경우에도 예외를 밖으로 던지지 않는다.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import DEFAULT_VERIFY_PATHS
from .logging_utils import get_logger


logger = get_logger(__name__)

HEALTH_PATH = "/health"


@dataclass
class EndpointCheck:
    path: str
    url: str
    status_code: Optional[int] = None
    passed: bool = False
    error: Optional[str] = None
    elapsed: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "url": self.url,
            "status": self.status_code,
            "passed": self.passed,
            "error": self.error,
            "elapsed": round(self.elapsed, 3),
        }


@dataclass
class VerificationReport:
    mode: str
    url: Optional[str] = None
    checks: List[EndpointCheck] = field(default_factory=list)
    skipped: bool = False
    reason: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.skipped or all(c.passed for c in self.checks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "url": self.url,
            "passed": self.passed,
            "skipped": self.skipped,
            "reason": self.reason,
            "checks": [c.to_dict() for c in self.checks],
        }

    def render(self) -> str:
        lines = ["## Post-deploy verification"]
        if self.skipped:
            lines.append(f"- skipped: {self.reason}")
            return "\n".join(lines)
        lines.append(f"- mode: {self.mode}")
        lines.append(f"- url: {self.url}")
        for c in self.checks:
            state = "OK" if c.passed else "FAIL"
            detail = c.status_code if c.status_code is not None else c.error
            lines.append(f"- {c.path}: {state} ({detail})")
        return "\n".join(lines)


def skipped_report(reason: str, mode: str = "smoke") -> VerificationReport:
    return VerificationReport(mode=mode, skipped=True, reason=reason)


class PostDeploymentVerifier:
    def __init__(
        self,
        *,
        paths: Sequence[str] = DEFAULT_VERIFY_PATHS,
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
        audit=None,  # noqa: ANN001
        deployment_id: Optional[str] = None,
    ) -> None:
        self.paths = list(paths)
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout, follow_redirects=True)
        self.audit = audit
        self.deployment_id = deployment_id

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def _check(self, base_url: str, path: str) -> EndpointCheck:
        url = base_url.rstrip("/") + path
        check = EndpointCheck(path=path, url=url)
        threshold = 400 if path == HEALTH_PATH else 500
        started = time.monotonic()
        try:
            response = self._http.get(url)
        except httpx.HTTPError as e:
            check.error = f"{type(e).__name__}: {e}"
        else:
            check.status_code = response.status_code
            check.passed = response.status_code < threshold
        check.elapsed = time.monotonic() - started
        log = logger.info if check.passed else logger.warning
        log("점검 %s -> %s", url, check.status_code if check.status_code is not None else check.error)
        return check

    def _run(self, mode: str, url: Optional[str], paths: Sequence[str]) -> VerificationReport:
        if not url:
            report = skipped_report("배포 URL 을 알 수 없습니다", mode)
        else:
            report = VerificationReport(mode=mode, url=url)
            for path in paths:
                report.checks.append(self._check(url, path))
        if self.audit is not None:
            self.audit.record(
                "VERIFICATION_RESULT",
                self.audit.domain_of(self.deployment_id),
                report.to_dict(),
                deployment_id=self.deployment_id,
            )
        return report

    def smoke(self, url: Optional[str]) -> VerificationReport:
        return self._run("smoke", url, [HEALTH_PATH])

    def comprehensive(self, url: Optional[str]) -> VerificationReport:
        return self._run("comprehensive", url, self.paths)
