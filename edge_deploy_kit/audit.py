"""
audit
-----

배포 감사 로그(AuditLedger).

- 이벤트 종류별로 level / category / retention 을 고정 매핑한다.
- 모든 이벤트는 세션 메모리 목록에 쌓이고, 메인 로그 / 일자별 로그 / 세션 로그에 즉시 기록된다.
  security, compliance 카테고리는 카테고리 전용 로그에도, error 레벨은 에러 로그에도 기록된다.
- 로그 하나는 설정된 포맷(json / text / csv)마다 따로 기록하며, 한 포맷의 실패가 다른 포맷을 막지 않는다.
- 쓰기 전에 파일 크기가 최대치를 넘으면 타임스탬프를 붙여 이름을 바꾸고 새 파일로 시작한다.
  회전 자체도 AUDIT_LOG_ROTATED 이벤트로 남긴다.
- 배포 한 건의 이벤트/단계 이력을 보고서(json / txt / csv)로 만든다. 실패한 배포도 동일하게 만든다.

AuditSession 은 전역 싱글턴이 아니라 오케스트레이터가 만들어 각 워크플로에 넘겨준다.
"""

from __future__ import annotations

import csv
import json
import os
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .logging_utils import get_logger, redact
from .models import utc_now


logger = get_logger(__name__)


@dataclass(frozen=True)
class EventSpec:
    level: str
    category: str
    retention: str


EVENT_TYPES: Dict[str, EventSpec] = {
    "DEPLOYMENT_START": EventSpec("info", "deployment", "long"),
    "DEPLOYMENT_END": EventSpec("info", "deployment", "long"),
    "DEPLOYMENT_ERROR": EventSpec("error", "deployment", "permanent"),
    "DEPLOYMENT_CANCELLED": EventSpec("warn", "deployment", "long"),
    "PHASE_START": EventSpec("debug", "phase", "standard"),
    "PHASE_END": EventSpec("debug", "phase", "standard"),
    "ROLLBACK_REGISTERED": EventSpec("info", "rollback", "long"),
    "ROLLBACK_START": EventSpec("warn", "rollback", "long"),
    "ROLLBACK_ACTION": EventSpec("warn", "rollback", "long"),
    "ROLLBACK_END": EventSpec("warn", "rollback", "long"),
    "CREDENTIALS_RESOLVED": EventSpec("info", "security", "long"),
    "SECRET_GENERATED": EventSpec("info", "security", "long"),
    "SECRET_DEPLOYED": EventSpec("info", "security", "long"),
    "SECRET_REUSED": EventSpec("info", "security", "long"),
    "DATABASE_CREATED": EventSpec("info", "database", "long"),
    "DATABASE_REUSED": EventSpec("info", "database", "long"),
    "DATABASE_DELETED": EventSpec("warn", "database", "permanent"),
    "VALIDATION_PASSED": EventSpec("info", "validation", "standard"),
    "VALIDATION_SKIPPED": EventSpec("info", "validation", "standard"),
    "VALIDATION_ERROR": EventSpec("error", "validation", "long"),
    "CONFIRMATION_GRANTED": EventSpec("info", "confirmation", "long"),
    "CONFIRMATION_DECLINED": EventSpec("warn", "confirmation", "long"),
    "VERIFICATION_RESULT": EventSpec("info", "verification", "standard"),
    "PERFORMANCE_METRIC": EventSpec("info", "performance", "standard"),
    "SECURITY_EVENT": EventSpec("warn", "security", "permanent"),
    "COMPLIANCE_VIOLATION": EventSpec("error", "compliance", "permanent"),
    "AUDIT_EVENT": EventSpec("info", "audit", "permanent"),
    "AUDIT_LOG_ROTATED": EventSpec("info", "audit", "standard"),
}
DEFAULT_EVENT_SPEC = EventSpec("info", "general", "standard")

FORMAT_SUFFIX = {"json": ".log", "text": ".txt", "csv": ".csv"}
CSV_HEADER = ["timestamp", "sequence", "eventType", "level", "category", "domain", "details"]
REPORT_CSV_HEADER = ["timestamp", "phase", "action", "status", "duration", "details"]

_SENSITIVE_KEYS = {"token", "api_token", "value", "secret", "password"}


def new_session_id(now: Optional[float] = None) -> str:
    millis = int((now if now is not None else time.time()) * 1000)
    digits = string.digits + string.ascii_lowercase
    encoded = ""
    while millis:
        millis, rem = divmod(millis, 36)
        encoded = digits[rem] + encoded
    suffix = "".join(secrets.choice(digits) for _ in range(6))
    return f"audit_{encoded or '0'}_{suffix}"


def _sanitize(value: Any) -> Any:
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, Mapping):
        cleaned: Dict[str, Any] = {}
        for key, item in value.items():
            if str(key).lower() in _SENSITIVE_KEYS and isinstance(item, str):
                cleaned[str(key)] = "[REDACTED]"
            else:
                cleaned[str(key)] = _sanitize(item)
        return cleaned
    if isinstance(value, (list, tuple, set)):
        return [_sanitize(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    level: str
    category: str
    retention: str
    domain: str
    details: Dict[str, Any]
    timestamp: str
    session_id: str
    sequence: int
    deployment_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "sequence": self.sequence,
            "sessionId": self.session_id,
            "eventType": self.event_type,
            "level": self.level,
            "category": self.category,
            "retention": self.retention,
            "domain": self.domain,
            "deploymentId": self.deployment_id,
            "details": self.details,
        }

    def to_text(self) -> str:
        details = json.dumps(self.details, ensure_ascii=False, default=str)
        return f"[{self.timestamp}] #{self.sequence} {self.event_type} [{self.level}] {self.domain}: {details}"

    def to_csv_row(self) -> List[str]:
        return [
            self.timestamp,
            str(self.sequence),
            self.event_type,
            self.level,
            self.category,
            self.domain,
            json.dumps(self.details, ensure_ascii=False, default=str),
        ]


@dataclass
class SessionMetrics:
    total_events: int = 0
    error_count: int = 0
    warning_count: int = 0
    deployment_count: int = 0
    rollback_count: int = 0
    write_failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalEvents": self.total_events,
            "errorCount": self.error_count,
            "warningCount": self.warning_count,
            "deploymentCount": self.deployment_count,
            "rollbackCount": self.rollback_count,
            "writeFailures": self.write_failures,
        }


@dataclass
class DeploymentAuditContext:
    deployment_id: str
    domain: str
    config: Dict[str, Any] = field(default_factory=dict)
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    status: str = "running"
    phases: List[Dict[str, Any]] = field(default_factory=list)
    events: List[AuditEvent] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    rollbacks: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    summary: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditSession:
    session_id: str = field(default_factory=new_session_id)
    start_time: datetime = field(default_factory=utc_now)
    deployments: Dict[str, DeploymentAuditContext] = field(default_factory=dict)
    events: List[AuditEvent] = field(default_factory=list)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)

    def next_sequence(self) -> int:
        seq = self.metrics.total_events
        self.metrics.total_events += 1
        return seq


@dataclass
class DeploymentReport:
    deployment_id: str
    data: Dict[str, Any]
    text: str
    files: Dict[str, str] = field(default_factory=dict)


class AuditLedger:
    def __init__(
        self,
        session: AuditSession,
        *,
        audit_dir: str,
        reports_dir: Optional[str] = None,
        formats: Sequence[str] = ("json", "text", "csv"),
        max_log_bytes: int = 100 * 1024 * 1024,
        retention_days: int = 90,
    ) -> None:
        unknown = [f for f in formats if f not in FORMAT_SUFFIX]
        if unknown:
            raise ValueError(f"지원하지 않는 감사 로그 포맷: {', '.join(unknown)}")
        self.session = session
        self.audit_dir = audit_dir
        self.reports_dir = reports_dir or os.path.join(audit_dir, "reports")
        self.formats = list(formats) or ["json"]
        self.max_log_bytes = int(max_log_bytes)
        self.retention_days = int(retention_days)
        self._rotating = False

        for sub in ("", "daily", "deployments", "security", "compliance"):
            os.makedirs(os.path.join(self.audit_dir, sub), exist_ok=True)
        os.makedirs(self.reports_dir, exist_ok=True)

    @classmethod
    def from_config(cls, cfg, session: Optional[AuditSession] = None) -> "AuditLedger":  # noqa: ANN001
        return cls(
            session or AuditSession(),
            audit_dir=cfg.audit_path,
            reports_dir=cfg.reports_path,
            formats=cfg.audit_formats,
            max_log_bytes=cfg.audit_max_log_bytes,
            retention_days=cfg.audit_retention_days,
        )

    # ------------------------------------------------------------------
    # 경로
    # ------------------------------------------------------------------

    @property
    def main_log(self) -> str:
        return os.path.join(self.audit_dir, "deployment-audit")

    @property
    def error_log(self) -> str:
        return os.path.join(self.audit_dir, "deployment-errors")

    @property
    def session_log(self) -> str:
        return os.path.join(self.audit_dir, "deployments", f"session-{self.session.session_id}")

    def daily_log(self, day: Optional[datetime] = None) -> str:
        day = day or utc_now()
        return os.path.join(self.audit_dir, "daily", f"audit-{day.strftime('%Y-%m-%d')}")

    def category_log(self, category: str) -> Optional[str]:
        if category in ("security", "compliance"):
            return os.path.join(self.audit_dir, category, f"{category}-audit")
        return None

    def file_for(self, base: str, fmt: str = "json") -> str:
        return base + FORMAT_SUFFIX[fmt]

    # ------------------------------------------------------------------
    # 기록
    # ------------------------------------------------------------------

    def record(
        self,
        event_type: str,
        domain: str = "SYSTEM",
        details: Optional[Mapping[str, Any]] = None,
        *,
        deployment_id: Optional[str] = None,
    ) -> AuditEvent:
        self._rotate_if_needed()
        spec = EVENT_TYPES.get(event_type, DEFAULT_EVENT_SPEC)
        event = AuditEvent(
            event_type=event_type,
            level=spec.level,
            category=spec.category,
            retention=spec.retention,
            domain=domain,
            details=_sanitize(dict(details or {})),
            timestamp=utc_now().isoformat(),
            session_id=self.session.session_id,
            sequence=self.session.next_sequence(),
            deployment_id=deployment_id,
        )

        self.session.events.append(event)
        if event.level == "error":
            self.session.metrics.error_count += 1
        elif event.level == "warn":
            self.session.metrics.warning_count += 1

        ctx = self.session.deployments.get(deployment_id) if deployment_id else None
        if ctx is not None:
            ctx.events.append(event)

        self._write_event(event)
        return event

    def _write_event(self, event: AuditEvent) -> None:
        targets = [self.main_log, self.daily_log(), self.session_log]
        category_target = self.category_log(event.category)
        if category_target:
            targets.append(category_target)
        if event.level == "error":
            targets.append(self.error_log)
        for base in targets:
            for fmt in self.formats:
                path = self.file_for(base, fmt)
                try:
                    self._append(path, fmt, event)
                except OSError as e:
                    self.session.metrics.write_failures += 1
                    logger.warning("감사 로그 기록 실패 (%s): %s", path, e)

    def _append(self, path: str, fmt: str, event: AuditEvent) -> None:
        if fmt == "csv":
            new_file = not os.path.exists(path) or os.path.getsize(path) == 0
            with open(path, "a", encoding="utf-8", newline="") as f:
                writer = csv.writer(f)
                if new_file:
                    writer.writerow(CSV_HEADER)
                writer.writerow(event.to_csv_row())
            return

        line = (
            json.dumps(event.to_dict(), ensure_ascii=False, default=str)
            if fmt == "json"
            else event.to_text()
        )
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _rotate_if_needed(self) -> None:
        """
        메인 로그가 max_log_bytes 를 넘으면 모든 포맷 파일을 같은 접미사로 한 번에 회전하고
        AUDIT_LOG_ROTATED 이벤트를 하나만 남긴다. 일별/세션 로그는 날짜와 세션으로 이미 나뉘므로 회전하지 않는다.
        """
        if self._rotating or self.max_log_bytes <= 0:
            return
        sizes: Dict[str, int] = {}
        for fmt in self.formats:
            path = self.file_for(self.main_log, fmt)
            if os.path.isfile(path):
                sizes[path] = os.path.getsize(path)
        if not sizes or max(sizes.values()) <= self.max_log_bytes:
            return

        stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
        rotated: Dict[str, str] = {}
        for path in sizes:
            root, ext = os.path.splitext(path)
            target = f"{root}-{stamp}{ext}"
            try:
                os.replace(path, target)
            except OSError as e:
                self.session.metrics.write_failures += 1
                logger.warning("감사 로그 회전 실패 (%s): %s", path, e)
                continue
            rotated[path] = target
            logger.info("감사 로그 회전: %s -> %s", path, target)
        if not rotated:
            return

        primary = next(iter(rotated))
        # 회전 이벤트를 남기는 동안에는 다시 회전하지 않는다.
        self._rotating = True
        try:
            self.record(
                "AUDIT_LOG_ROTATED",
                details={
                    "file": primary,
                    "rotatedTo": rotated[primary],
                    "files": rotated,
                    "size": max(sizes.values()),
                },
            )
        finally:
            self._rotating = False

    # ------------------------------------------------------------------
    # 배포 단위 API
    # ------------------------------------------------------------------

    def _context(self, deployment_id: str) -> Optional[DeploymentAuditContext]:
        return self.session.deployments.get(deployment_id)

    def domain_of(self, deployment_id: Optional[str]) -> str:
        ctx = self._context(deployment_id) if deployment_id else None
        return ctx.domain if ctx else "SYSTEM"

    def start_deployment(
        self,
        deployment_id: str,
        domain: str,
        config: Optional[Mapping[str, Any]] = None,
    ) -> DeploymentAuditContext:
        ctx = DeploymentAuditContext(
            deployment_id=deployment_id,
            domain=domain,
            config=_sanitize(dict(config or {})),
        )
        self.session.deployments[deployment_id] = ctx
        self.session.metrics.deployment_count += 1
        self.record(
            "DEPLOYMENT_START",
            domain,
            {"deploymentId": deployment_id, "config": ctx.config},
            deployment_id=deployment_id,
        )
        return ctx

    def end_deployment(
        self,
        deployment_id: str,
        status: str,
        summary: Optional[Mapping[str, Any]] = None,
    ) -> Optional[DeploymentReport]:
        ctx = self._context(deployment_id)
        if ctx is None:
            logger.warning("시작 기록이 없는 배포입니다: %s", deployment_id)
            return None
        ctx.end_time = utc_now()
        ctx.status = status
        ctx.summary = _sanitize(dict(summary or {}))
        duration = (ctx.end_time - ctx.start_time).total_seconds()
        ctx.metrics["duration"] = duration
        self.record(
            "DEPLOYMENT_END",
            ctx.domain,
            {"deploymentId": deployment_id, "status": status, "duration": duration, "summary": ctx.summary},
            deployment_id=deployment_id,
        )
        return self.generate_deployment_report(deployment_id)

    def log_phase(
        self,
        deployment_id: str,
        phase: str,
        action: str,
        details: Optional[Mapping[str, Any]] = None,
    ) -> AuditEvent:
        ctx = self._context(deployment_id)
        now = utc_now()
        entry: Dict[str, Any] = {
            "phase": phase,
            "action": action,
            "timestamp": now.isoformat(),
            "status": "running" if action == "start" else action,
            "duration": None,
            "details": _sanitize(dict(details or {})),
        }
        if ctx is not None:
            if action != "start":
                started = next(
                    (p for p in reversed(ctx.phases) if p["phase"] == phase and p["action"] == "start"),
                    None,
                )
                if started is not None:
                    begun = datetime.fromisoformat(started["timestamp"])
                    entry["duration"] = (now - begun).total_seconds()
            ctx.phases.append(entry)

        event_type = "PHASE_START" if action == "start" else "PHASE_END"
        return self.record(
            event_type,
            self.domain_of(deployment_id),
            {"phase": phase, "action": action, "duration": entry["duration"], **entry["details"]},
            deployment_id=deployment_id,
        )

    def log_error(
        self,
        deployment_id: Optional[str],
        error: BaseException,
        context: Optional[Mapping[str, Any]] = None,
    ) -> AuditEvent:
        info: Dict[str, Any] = {
            "errorType": type(error).__name__,
            "message": str(error),
            "phase": getattr(error, "phase", None),
            "remediation": getattr(error, "remediation", None),
        }
        info.update(dict(context or {}))
        ctx = self._context(deployment_id) if deployment_id else None
        if ctx is not None:
            ctx.errors.append(_sanitize(info))
        return self.record("DEPLOYMENT_ERROR", self.domain_of(deployment_id), info, deployment_id=deployment_id)

    def log_security_event(
        self,
        deployment_id: Optional[str],
        event: str,
        details: Optional[Mapping[str, Any]] = None,
    ) -> AuditEvent:
        return self.record(
            "SECURITY_EVENT",
            self.domain_of(deployment_id),
            {"securityEvent": event, **dict(details or {})},
            deployment_id=deployment_id,
        )

    def log_performance_metric(
        self,
        deployment_id: Optional[str],
        metric: str,
        value: float,
        unit: str = "s",
    ) -> AuditEvent:
        ctx = self._context(deployment_id) if deployment_id else None
        if ctx is not None:
            ctx.metrics[metric] = value
        return self.record(
            "PERFORMANCE_METRIC",
            self.domain_of(deployment_id),
            {"metric": metric, "value": value, "unit": unit},
            deployment_id=deployment_id,
        )

    def log_rollback(
        self,
        deployment_id: Optional[str],
        action: str,
        data: Optional[Mapping[str, Any]] = None,
    ) -> AuditEvent:
        event_type = {
            "start": "ROLLBACK_START",
            "end": "ROLLBACK_END",
            "register": "ROLLBACK_REGISTERED",
        }.get(action, "ROLLBACK_ACTION")
        if action == "start":
            self.session.metrics.rollback_count += 1
        payload = dict(data or {})
        ctx = self._context(deployment_id) if deployment_id else None
        if ctx is not None:
            ctx.rollbacks.append(_sanitize({"action": action, **payload}))
        return self.record(event_type, self.domain_of(deployment_id), payload, deployment_id=deployment_id)

    # ------------------------------------------------------------------
    # 보고서
    # ------------------------------------------------------------------

    def generate_deployment_report(self, deployment_id: str) -> Optional[DeploymentReport]:
        ctx = self._context(deployment_id)
        if ctx is None:
            logger.warning("보고서를 만들 배포 기록이 없습니다: %s", deployment_id)
            return None

        end = ctx.end_time or utc_now()
        data: Dict[str, Any] = {
            "deploymentId": ctx.deployment_id,
            "sessionId": self.session.session_id,
            "domain": ctx.domain,
            "status": ctx.status,
            "startTime": ctx.start_time.isoformat(),
            "endTime": ctx.end_time.isoformat() if ctx.end_time else None,
            "duration": (end - ctx.start_time).total_seconds(),
            "config": ctx.config,
            "phases": ctx.phases,
            "errors": ctx.errors,
            "rollbacks": ctx.rollbacks,
            "metrics": ctx.metrics,
            "summary": ctx.summary,
            "eventCount": len(ctx.events),
            "events": [e.to_dict() for e in ctx.events],
        }
        text = render_report_text(data)

        files: Dict[str, str] = {}
        base = os.path.join(self.reports_dir, f"deployment-{deployment_id}")
        writers = (
            (".json", lambda f: json.dump(data, f, indent=2, ensure_ascii=False, default=str)),
            (".txt", lambda f: f.write(text + "\n")),
            (".csv", lambda f: _write_report_csv(f, ctx.phases)),
        )
        for suffix, write in writers:
            path = base + suffix
            try:
                with open(path, "w", encoding="utf-8", newline="") as f:
                    write(f)
                files[suffix.lstrip(".")] = path
            except OSError as e:
                self.session.metrics.write_failures += 1
                logger.warning("배포 보고서 기록 실패 (%s): %s", path, e)

        logger.info("배포 보고서 생성: %s", ", ".join(files.values()) or "(없음)")
        return DeploymentReport(deployment_id=deployment_id, data=data, text=text, files=files)

    # ------------------------------------------------------------------
    # 조회/정리
    # ------------------------------------------------------------------

    def search(
        self,
        *,
        event_type: Optional[str] = None,
        category: Optional[str] = None,
        level: Optional[str] = None,
        domain: Optional[str] = None,
        deployment_id: Optional[str] = None,
        include_history: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        이벤트를 조건으로 걸러낸다. include_history=True 면 메인 json 로그(회전된 파일 포함)에서
        이전 세션 이벤트까지 읽는다.
        """
        if include_history:
            candidates: Iterable[Dict[str, Any]] = self._read_history()
        else:
            candidates = (e.to_dict() for e in self.session.events)

        wanted = {
            "eventType": event_type,
            "category": category,
            "level": level,
            "domain": domain,
            "deploymentId": deployment_id,
        }
        return [
            item for item in candidates
            if all(v is None or item.get(k) == v for k, v in wanted.items())
        ]

    def _read_history(self) -> Iterable[Dict[str, Any]]:
        prefix = os.path.basename(self.main_log)
        names = sorted(
            n for n in os.listdir(self.audit_dir)
            if n.startswith(prefix) and n.endswith(FORMAT_SUFFIX["json"])
        )
        for name in names:
            with open(os.path.join(self.audit_dir, name), "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield json.loads(line)
                    except ValueError:
                        logger.debug("감사 로그 줄 파싱 실패: %s", name)

    def summary(self) -> Dict[str, Any]:
        by_category: Dict[str, int] = {}
        by_level: Dict[str, int] = {}
        for event in self.session.events:
            by_category[event.category] = by_category.get(event.category, 0) + 1
            by_level[event.level] = by_level.get(event.level, 0) + 1
        return {
            "sessionId": self.session.session_id,
            "startTime": self.session.start_time.isoformat(),
            "metrics": self.session.metrics.to_dict(),
            "eventsByCategory": by_category,
            "eventsByLevel": by_level,
            "deployments": {
                dep_id: ctx.status for dep_id, ctx in self.session.deployments.items()
            },
        }

    def purge_expired(self, retention_days: Optional[int] = None, *, now: Optional[float] = None) -> List[str]:
        """보관 기간이 지난 일자별/세션/회전 로그 파일을 지운다. 현재 기록 중인 파일은 건드리지 않는다."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = (now if now is not None else time.time()) - timedelta(days=days).total_seconds()
        live = {
            self.file_for(base, fmt)
            for base in (self.main_log, self.error_log, self.session_log, self.daily_log())
            for fmt in FORMAT_SUFFIX
        }
        removed: List[str] = []
        for root, _dirs, files in os.walk(self.audit_dir):
            for name in files:
                path = os.path.join(root, name)
                if path in live or os.path.getmtime(path) >= cutoff:
                    continue
                os.remove(path)
                removed.append(path)
        if removed:
            self.record("AUDIT_EVENT", details={"action": "purge", "removed": len(removed), "retentionDays": days})
        return removed


def _write_report_csv(f, phases: Sequence[Mapping[str, Any]]) -> None:  # noqa: ANN001
    writer = csv.writer(f)
    writer.writerow(REPORT_CSV_HEADER)
    for p in phases:
        writer.writerow([
            p.get("timestamp", ""),
            p.get("phase", ""),
            p.get("action", ""),
            p.get("status", ""),
            "" if p.get("duration") is None else f"{p['duration']:.3f}",
            json.dumps(p.get("details") or {}, ensure_ascii=False, default=str),
        ])


def render_report_text(data: Mapping[str, Any]) -> str:
    lines: List[str] = []
    lines.append("# Deployment report")
    lines.append(f"- deployment_id: {data['deploymentId']}")
    lines.append(f"- domain: {data['domain']}")
    lines.append(f"- status: {data['status']}")
    lines.append(f"- started: {data['startTime']}")
    lines.append(f"- finished: {data['endTime'] or '(미완료)'}")
    lines.append(f"- duration: {data['duration']:.1f}s")
    lines.append(f"- events: {data['eventCount']}")
    lines.append("")

    lines.append("## Phases")
    finished = [p for p in data["phases"] if p["action"] != "start"]
    if finished:
        for p in finished:
            duration = "" if p["duration"] is None else f" ({p['duration']:.1f}s)"
            lines.append(f"- {p['phase']}: {p['status']}{duration}")
    else:
        lines.append("- (none)")

    lines.append("")
    lines.append("## Errors")
    if data["errors"]:
        for err in data["errors"]:
            lines.append(f"- [{err.get('phase') or '-'}] {err.get('errorType')}: {err.get('message')}")
    else:
        lines.append("- (none)")

    lines.append("")
    lines.append("## Rollback")
    if data["rollbacks"]:
        for rb in data["rollbacks"]:
            target = rb.get("target") or rb.get("status") or ""
            lines.append(f"- {rb.get('action')}: {rb.get('type', '')} {target}".rstrip())
    else:
        lines.append("- (none)")

    return "\n".join(lines)
