"""
discovery
---------

로컬 매니페스트(wrangler.toml)와 저장된 배포 설정에서 배포 정보를 찾아낸다.

매니페스트는 아래 전략을 순서대로 실행해 처음 찾은 것을 사용한다.

1. 환경 전용 매니페스트 (config/wrangler.<env>.toml, config/wrangler.toml)
2. 루트 매니페스트 (wrangler.toml)

워커 이름이 끝까지 비어 있으면 package.json 의 name 을 마지막 수단으로 쓴다.
각 전략은 필드가 없어도 실패하지 않고 찾을 수 있는 것만 채운다.
"""

from __future__ import annotations

import json
import os
import re
import tomllib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .local_state import SavedConfigStore
from .logging_utils import get_logger
from .models import DatabaseConfig, WorkerConfig, merge_database, merge_worker


logger = get_logger(__name__)

ROOT_MANIFEST = "wrangler.toml"


@dataclass(frozen=True)
class D1Binding:
    binding: Optional[str]
    database_name: Optional[str]
    database_id: Optional[str] = None


@dataclass
class ManifestInfo:
    config_path: str
    source: str
    has_environment_sections: bool = False
    worker_name: Optional[str] = None
    routes: List[str] = field(default_factory=list)
    d1_bindings: List[D1Binding] = field(default_factory=list)
    compatibility_date: Optional[str] = None
    main: Optional[str] = None
    parsed: bool = True
    parse_error: Optional[str] = None
    name_source: Optional[str] = None

    @property
    def is_default_path(self) -> bool:
        return os.path.normpath(self.config_path) == ROOT_MANIFEST


def _route_patterns(value: Any) -> List[str]:
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    patterns: List[str] = []
    for item in items:
        if isinstance(item, str):
            patterns.append(item)
        elif isinstance(item, dict) and item.get("pattern"):
            patterns.append(str(item["pattern"]))
    return patterns


def _d1_bindings(value: Any) -> List[D1Binding]:
    bindings: List[D1Binding] = []
    for item in value or []:
        if not isinstance(item, dict):
            continue
        bindings.append(
            D1Binding(
                binding=item.get("binding") or None,
                database_name=item.get("database_name") or None,
                database_id=item.get("database_id") or None,
            )
        )
    return bindings


def parse_manifest(text: str, rel_path: str, environment: str, source: str) -> ManifestInfo:
    """TOML 을 해석해 ManifestInfo 를 만든다. 해석에 실패하면 줄 단위로 최소한의 값만 뽑는다."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        logger.warning("매니페스트를 TOML 로 해석하지 못해 느슨하게 읽습니다: %s (%s)", rel_path, e)
        info = _parse_loosely(text, rel_path, environment, source)
        info.parsed = False
        info.parse_error = str(e)
        return info

    envs = data.get("env") if isinstance(data.get("env"), dict) else {}
    env_section = envs.get(environment) if isinstance(envs.get(environment), dict) else None

    name = data.get("name")
    routes = _route_patterns(data.get("routes")) or _route_patterns(data.get("route"))
    bindings = _d1_bindings(data.get("d1_databases"))

    if env_section is not None:
        env_routes = _route_patterns(env_section.get("routes")) or _route_patterns(env_section.get("route"))
        routes = env_routes or routes
        bindings = _d1_bindings(env_section.get("d1_databases")) or bindings
        if env_section.get("name"):
            name = env_section["name"]
        elif name:
            # wrangler 는 환경 섹션이 이름을 지정하지 않으면 <name>-<env> 로 배포한다.
            name = f"{name}-{environment}"

    return ManifestInfo(
        config_path=rel_path,
        source=source,
        has_environment_sections=env_section is not None,
        worker_name=name or None,
        routes=routes,
        d1_bindings=bindings,
        compatibility_date=data.get("compatibility_date"),
        main=data.get("main"),
        name_source="manifest" if name else None,
    )


_NAME_RE = re.compile(r'^\s*name\s*=\s*"([^"]+)"', re.M)
_ROUTE_RE = re.compile(r'(?:^\s*route\s*=\s*|pattern\s*=\s*)"([^"]+)"', re.M)
_ENV_SECTION_RE = re.compile(r"^\s*\[env\.([\w-]+)\]", re.M)
_COMPAT_RE = re.compile(r'^\s*compatibility_date\s*=\s*"([^"]+)"', re.M)


def _parse_loosely(text: str, rel_path: str, environment: str, source: str) -> ManifestInfo:
    first_section = re.search(r"^\s*\[", text, re.M)
    top = text[: first_section.start()] if first_section else text
    name = _NAME_RE.search(top)
    compat = _COMPAT_RE.search(top)
    return ManifestInfo(
        config_path=rel_path,
        source=source,
        has_environment_sections=environment in _ENV_SECTION_RE.findall(text),
        worker_name=name.group(1) if name else None,
        name_source="manifest" if name else None,
        routes=_ROUTE_RE.findall(text),
        compatibility_date=compat.group(1) if compat else None,
    )


def _read_manifest(base_dir: str, rel_path: str, environment: str, source: str) -> Optional[ManifestInfo]:
    path = os.path.join(base_dir, rel_path)
    if not os.path.isfile(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    logger.debug("매니페스트 발견: %s (%s)", rel_path, source)
    return parse_manifest(text, rel_path, environment, source)


# --- 전략 ----------------------------------------------------------------

def from_environment_manifest(base_dir: str, environment: str) -> Optional[ManifestInfo]:
    for rel in (os.path.join("config", f"wrangler.{environment}.toml"), os.path.join("config", "wrangler.toml")):
        info = _read_manifest(base_dir, rel, environment, "environment-manifest")
        if info is not None:
            return info
    return None


def from_root_manifest(base_dir: str, environment: str) -> Optional[ManifestInfo]:
    return _read_manifest(base_dir, ROOT_MANIFEST, environment, "root-manifest")


ManifestStrategy = Callable[[str, str], Optional[ManifestInfo]]
MANIFEST_STRATEGIES: Sequence[ManifestStrategy] = (from_environment_manifest, from_root_manifest)


def worker_name_from_package(base_dir: str) -> Optional[str]:
    path = os.path.join(base_dir, "package.json")
    if not os.path.isfile(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("package.json 을 읽지 못했습니다: %s", e)
        return None
    name = data.get("name") if isinstance(data, dict) else None
    if not name:
        return None
    # @scope/name 형태면 name 부분만 사용
    return str(name).split("/")[-1]


def discover_manifest(
    base_dir: str,
    environment: str,
    strategies: Sequence[ManifestStrategy] = MANIFEST_STRATEGIES,
) -> Optional[ManifestInfo]:
    for strategy in strategies:
        info = strategy(base_dir, environment)
        if info is not None:
            if not info.worker_name:
                info.worker_name = worker_name_from_package(base_dir)
                if info.worker_name:
                    info.name_source = "package.json"
            return info
    return None


def match_zone(domain: str, zones: Sequence[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """도메인이 속한 존을 찾는다. 정확히 같은 이름이 우선이고, 없으면 가장 긴 접미사 일치."""
    domain = domain.strip().lower().rstrip(".")
    best: Optional[Dict[str, Any]] = None
    for zone in zones:
        name = str(zone.get("name", "")).lower()
        if not name:
            continue
        if domain == name:
            return zone
        if domain.endswith("." + name) and (best is None or len(name) > len(str(best.get("name", "")))):
            best = zone
    return best


# --- 통합 ----------------------------------------------------------------

@dataclass
class PartialDeploymentConfig:
    domain: str
    environment: str
    manifest: Optional[ManifestInfo] = None
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    zone_id: Optional[str] = None
    stored: Optional[Dict[str, Any]] = None

    @property
    def first_deployment(self) -> bool:
        """이전에 성공한 배포 기록이 없으면 첫 배포로 본다."""
        return not (self.stored and self.stored.get("worker", {}).get("url"))


class ResourceDiscovery:
    def __init__(
        self,
        base_dir: str = ".",
        *,
        store: Optional[SavedConfigStore] = None,
        strategies: Sequence[ManifestStrategy] = MANIFEST_STRATEGIES,
    ) -> None:
        self.base_dir = base_dir
        self.store = store
        self.strategies = strategies

    def find_manifest(self, environment: str) -> Optional[ManifestInfo]:
        return discover_manifest(self.base_dir, environment, self.strategies)

    def discover(self, domain: str, environment: str = "production") -> PartialDeploymentConfig:
        manifest = self.find_manifest(environment)
        stored = self.store.load(domain, environment) if self.store is not None else None

        from_manifest = WorkerConfig(name=manifest.worker_name if manifest else None)
        if manifest is None:
            package_name = worker_name_from_package(self.base_dir)
            from_manifest = WorkerConfig(name=package_name)

        stored_worker = None
        if stored and isinstance(stored.get("worker"), dict):
            stored_worker = WorkerConfig(name=stored["worker"].get("name"), url=stored["worker"].get("url"))
        stored_db = None
        if stored and stored.get("database"):
            db = stored["database"]
            stored_db = DatabaseConfig(name=db.get("name"), id=db.get("id"))

        manifest_db = None
        if manifest is not None:
            declared = next((b for b in manifest.d1_bindings if b.database_name), None)
            if declared is not None:
                manifest_db = DatabaseConfig(name=declared.database_name, id=declared.database_id)

        partial = PartialDeploymentConfig(
            domain=domain,
            environment=environment,
            manifest=manifest,
            worker=merge_worker(from_manifest, stored_worker),
            database=merge_database(manifest_db, stored_db),
            zone_id=(stored or {}).get("zone_id"),
            stored=stored,
        )
        logger.info(
            "탐색 결과: manifest=%s worker=%s database=%s",
            manifest.config_path if manifest else "(없음)",
            partial.worker.name or "(미정)",
            partial.database.name or "(미정)",
        )
        return partial
