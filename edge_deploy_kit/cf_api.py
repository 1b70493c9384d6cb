"""
cf_api
------

Cloudflare REST API(v4) 최소 클라이언트.
토큰 검증, 계정 목록, 존 목록만 사용한다.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from .errors import CloudflareAPIError, InvalidCredentialError
from .logging_utils import get_logger
from .subprocess_utils import retry_call


logger = get_logger(__name__)

API_BASE_URL = "https://api.cloudflare.com/client/v4"
TRANSIENT_HTTP_ERRORS = (httpx.ConnectError, httpx.TimeoutException)


class CloudflareClient:
    def __init__(
        self,
        token: str,
        *,
        base_url: str = API_BASE_URL,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_delay: float = 2.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            transport=transport,
        )
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "CloudflareClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        def _call() -> httpx.Response:
            return self._client.get(path, params=params)

        try:
            response = retry_call(
                _call,
                attempts=self.retry_attempts,
                delay=self.retry_delay,
                retry_on=TRANSIENT_HTTP_ERRORS,
                description=f"GET {path}",
            )
        except httpx.TransportError as e:
            raise CloudflareAPIError(
                f"Cloudflare API 에 연결할 수 없습니다: {e}",
                remediation="네트워크/프록시 설정을 확인하세요",
            ) from e

        if response.status_code == 401:
            raise InvalidCredentialError(
                "API 토큰이 유효하지 않습니다 (401)",
                remediation="토큰 값을 다시 확인하거나 새 토큰을 발급하세요",
            )
        if response.status_code == 403:
            raise InvalidCredentialError(
                f"API 토큰 권한이 부족합니다 (403): {path}",
                remediation="토큰에 Account:Read, Zone:Read, Workers Scripts:Edit, D1:Edit 권한이 있는지 확인하세요",
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise CloudflareAPIError(
                f"Cloudflare API 응답을 해석할 수 없습니다: {path}",
                status_code=response.status_code,
            ) from e

        if response.status_code >= 400 or not payload.get("success", False):
            messages = ", ".join(
                str(err.get("message", err)) for err in payload.get("errors") or []
            ) or f"HTTP {response.status_code}"
            raise CloudflareAPIError(
                f"Cloudflare API 오류 ({path}): {messages}",
                status_code=response.status_code,
            )
        return payload.get("result")

    def verify_token(self) -> Dict[str, Any]:
        result = self._get("/user/tokens/verify") or {}
        status = result.get("status")
        if status and status != "active":
            raise InvalidCredentialError(
                f"API 토큰 상태가 active 가 아닙니다: {status}",
                remediation="Cloudflare 대시보드에서 토큰 상태를 확인하세요",
            )
        return result

    def list_accounts(self) -> List[Dict[str, Any]]:
        return list(self._get("/accounts", {"per_page": 100}) or [])

    def list_zones(self, account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"per_page": 100}
        if account_id:
            params["account.id"] = account_id
        return list(self._get("/zones", params) or [])
