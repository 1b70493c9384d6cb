"""
cf_auth
-------

Cloudflare 접근 정보(API 토큰, 계정 ID, 존 ID) 확보.

값마다 다음 순서로 찾는다.

1. 명시적으로 넘겨받은 값(CLI 인자)
2. 환경변수 (CLOUDFLARE_API_TOKEN / CLOUDFLARE_ACCOUNT_ID / CLOUDFLARE_ZONE_ID 등)
3. 이전에 확보한 값 (세션 캐시, 암호화된 토큰 캐시 파일)
4. 대화형 입력
5. 그래도 비어 있는 계정/존은 토큰으로 원격 목록을 조회해 결정

세 값이 모두 1~2 단계에서 채워지면 원격 호출과 프롬프트를 전혀 하지 않는다.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from cryptography.fernet import Fernet, InvalidToken

from .cf_api import CloudflareClient
from .discovery import match_zone
from .errors import AmbiguousResourceError, InvalidCredentialError
from .local_state import atomic_write_json, atomic_write_text, read_json
from .logging_utils import get_logger, register_sensitive_values
from .models import Credentials, merge_credential_field, utc_now
from .prompts import OperatorInterface


logger = get_logger(__name__)

TOKEN_ENV_NAMES = ("CLOUDFLARE_API_TOKEN", "CF_API_TOKEN")
ACCOUNT_ENV_NAMES = ("CLOUDFLARE_ACCOUNT_ID", "CF_ACCOUNT_ID")
ZONE_ENV_NAMES = ("CLOUDFLARE_ZONE_ID", "CF_ZONE_ID")

CACHE_SERVICE = "cloudflare"


class TokenCache:
    """
    API 토큰을 Fernet 으로 암호화해 로컬에 보관한다.
    키 파일은 캐시 파일과 같은 디렉토리의 .token-key (권한 0600).
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.key_path = os.path.join(os.path.dirname(path), ".token-key")

    def _existing_fernet(self) -> Optional[Fernet]:
        if not os.path.exists(self.key_path):
            return None
        with open(self.key_path, "rb") as f:
            return Fernet(f.read().strip())

    def _fernet_for_write(self) -> Fernet:
        existing = self._existing_fernet()
        if existing is not None:
            return existing
        key = Fernet.generate_key()
        atomic_write_text(self.key_path, key.decode("ascii"), mode=0o600)
        return Fernet(key)

    def load(self, service: str = CACHE_SERVICE) -> Optional[str]:
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as e:
            logger.warning("토큰 캐시를 읽지 못했습니다: %s (%s)", self.path, e)
            return None
        if not data:
            return None
        encrypted = (data.get("tokens") or {}).get(service)
        if not encrypted:
            return None
        try:
            fernet = self._existing_fernet()
        except ValueError as e:
            logger.warning("토큰 캐시 키가 손상되어 캐시를 무시합니다: %s", e)
            return None
        if fernet is None:
            logger.warning("토큰 캐시 키 파일이 없어 캐시를 무시합니다: %s", self.key_path)
            return None
        try:
            token = fernet.decrypt(encrypted.encode("ascii")).decode("utf-8")
        except InvalidToken:
            logger.warning("토큰 캐시를 복호화할 수 없어 무시합니다: %s", self.path)
            return None
        register_sensitive_values([token])
        return token

    def save(self, token: str, service: str = CACHE_SERVICE) -> None:
        fernet = self._fernet_for_write()
        try:
            data = read_json(self.path) or {}
        except (OSError, ValueError):
            data = {}
        tokens = dict(data.get("tokens") or {})
        tokens[service] = fernet.encrypt(token.encode("utf-8")).decode("ascii")
        payload = {
            "encrypted": True,
            "lastUpdated": utc_now().isoformat(),
            "services": sorted(tokens),
            "tokens": tokens,
        }
        atomic_write_json(self.path, payload, mode=0o600)
        logger.debug("API 토큰을 캐시에 저장했습니다: %s", self.path)


@dataclass
class CredentialInput:
    token: Optional[str] = None
    account_id: Optional[str] = None
    zone_id: Optional[str] = None


def _from_env(env: Mapping[str, str], names: Tuple[str, ...]) -> Optional[str]:
    for name in names:
        value = env.get(name)
        if value:
            return value.strip()
    return None


ClientFactory = Callable[[str], Any]


class CredentialProvider:
    def __init__(
        self,
        operator: OperatorInterface,
        *,
        token_cache: Optional[TokenCache] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self._operator = operator
        self._cache = token_cache
        self._client_factory: ClientFactory = client_factory or (lambda token: CloudflareClient(token))
        self._verified: Set[str] = set()
        self._last: Optional[Credentials] = None
        self._last_domain: Optional[str] = None
        self.sources: Dict[str, str] = {}

    def acquire(
        self,
        explicit: Optional[CredentialInput] = None,
        env_overrides: Optional[Mapping[str, str]] = None,
        *,
        domain: Optional[str] = None,
        require_zone: bool = True,
    ) -> Credentials:
        """
        require_zone=False 이면 존은 찾지 않는다. 롤백처럼 계정 단위 명령만 실행할 때 쓴다.
        """
        explicit = explicit or CredentialInput()
        env = os.environ if env_overrides is None else env_overrides
        sources: Dict[str, str] = {}

        token = merge_credential_field(explicit.token, _from_env(env, TOKEN_ENV_NAMES))
        account_id = merge_credential_field(explicit.account_id, _from_env(env, ACCOUNT_ENV_NAMES))
        zone_id = merge_credential_field(explicit.zone_id, _from_env(env, ZONE_ENV_NAMES))
        for name, value, given in (
            ("token", token, explicit.token),
            ("account_id", account_id, explicit.account_id),
            ("zone_id", zone_id, explicit.zone_id),
        ):
            if value:
                sources[name] = "explicit" if given else "environment"

        if token and account_id and (zone_id or not require_zone):
            register_sensitive_values([token])
            self.sources = sources
            creds = Credentials(token=token, account_id=account_id, zone_id=zone_id or "")
            self._remember(creds, domain)
            return creds

        if not token:
            token, sources["token"] = self._cached_or_prompted_token()

        # 같은 토큰으로 이미 확보한 계정/존은 다시 조회하지 않는다.
        last = self._last if self._last and self._last.token == token else None
        if last is not None:
            if not account_id:
                account_id = last.account_id
                sources["account_id"] = "session"
            if not zone_id and self._last_domain == domain:
                zone_id = last.zone_id
                sources["zone_id"] = "session"

        register_sensitive_values([token])
        zone_name = last.zone_name if last is not None and zone_id == last.zone_id else None

        if token not in self._verified or not account_id or (require_zone and not zone_id):
            client = self._client_factory(token)
            try:
                if token not in self._verified:
                    client.verify_token()
                    self._verified.add(token)
                    logger.info("API 토큰 검증 완료")
                if not account_id:
                    account_id = self._pick_account(client)
                    sources["account_id"] = "remote"
                if require_zone and not zone_id:
                    zone_id, zone_name = self._pick_zone(client, account_id, domain)
                    sources["zone_id"] = "remote"
            finally:
                if hasattr(client, "close"):
                    client.close()

        if self._cache is not None and sources.get("token") != "cache":
            try:
                self._cache.save(token)
            except OSError as e:
                logger.warning("토큰 캐시 저장 실패 (다음 실행에서 다시 입력해야 합니다): %s", e)

        self.sources = sources
        creds = Credentials(token=token, account_id=account_id, zone_id=zone_id or "", zone_name=zone_name)
        self._remember(creds, domain)
        return creds

    def _remember(self, creds: Credentials, domain: Optional[str]) -> None:
        self._last = creds
        self._last_domain = domain

    def _cached_or_prompted_token(self) -> Tuple[str, str]:
        if self._last is not None:
            return self._last.token, "session"

        cached = self._cache.load() if self._cache is not None else None
        if cached:
            if not self._operator.interactive or self._operator.confirm(
                "저장된 Cloudflare API 토큰을 사용할까요?", default=True
            ):
                return cached, "cache"

        if self._operator.interactive:
            token = self._operator.ask_text("Cloudflare API 토큰을 입력하세요", secret=True).strip()
            if token:
                return token, "prompt"

        raise InvalidCredentialError(
            "Cloudflare API 토큰이 없습니다.",
            phase="credentials",
            remediation="--token 옵션이나 CLOUDFLARE_API_TOKEN 환경변수로 토큰을 지정하세요",
        )

    def _select(self, kind: str, items: List[Dict[str, Any]], labels: List[str]) -> Dict[str, Any]:
        if len(items) == 1:
            logger.info("%s 자동 선택: %s", kind, labels[0])
            return items[0]
        if not self._operator.interactive:
            raise AmbiguousResourceError(kind, labels, phase="credentials")
        idx = self._operator.choose(f"사용할 {kind} 을(를) 선택하세요", labels, default_index=None)
        return items[idx]

    def _pick_account(self, client: Any) -> str:
        accounts = client.list_accounts()
        if not accounts:
            raise InvalidCredentialError(
                "토큰으로 접근 가능한 Cloudflare 계정이 없습니다.",
                phase="credentials",
                remediation="토큰에 Account:Read 권한을 추가하거나 --account-id 를 지정하세요",
            )
        labels = [f"{a.get('name', '?')} ({a['id']})" for a in accounts]
        return str(self._select("account", accounts, labels)["id"])

    def _pick_zone(self, client: Any, account_id: str, domain: Optional[str]) -> Tuple[str, Optional[str]]:
        zones = client.list_zones(account_id)
        if not zones:
            raise InvalidCredentialError(
                "토큰으로 접근 가능한 존(zone)이 없습니다.",
                phase="credentials",
                remediation="도메인을 Cloudflare 에 추가했는지, 토큰에 Zone:Read 권한이 있는지 확인하세요",
            )
        if domain:
            matched = match_zone(domain, zones)
            if matched is not None:
                logger.info("도메인 %s 에 해당하는 존: %s", domain, matched.get("name"))
                return str(matched["id"]), matched.get("name")
            logger.warning("도메인 %s 에 해당하는 존을 찾지 못했습니다. 전체 목록에서 선택합니다.", domain)
        labels = [f"{z.get('name', '?')} ({z['id']})" for z in zones]
        picked = self._select("zone", zones, labels)
        return str(picked["id"]), picked.get("name")
