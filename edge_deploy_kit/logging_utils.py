import logging
import sys
from typing import Iterable


_REDACTED = "[REDACTED]"
_sensitive_values: set[str] = set()


def register_sensitive_values(values: Iterable[str]) -> None:
    """토큰/시크릿 값을 등록하면 이후 모든 로그 레코드에서 마스킹된다."""
    for value in values:
        # 너무 짧은 값은 일반 단어까지 가려버리므로 제외
        if value and len(value) >= 8:
            _sensitive_values.add(value)


def redact(text: str) -> str:
    for value in sorted(_sensitive_values, key=len, reverse=True):
        text = text.replace(value, _REDACTED)
    return text


class RedactingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if _sensitive_values:
            record.msg = redact(record.getMessage())
            record.args = None
        return True


def setup_logging(verbosity: int = 0) -> None:
    level = logging.INFO
    if verbosity >= 1:
        level = logging.DEBUG

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RedactingFilter())
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=[handler],
    )
    # httpx 는 요청마다 INFO 로그를 남기므로 -v 가 아니면 조용히 둔다.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbosity >= 2 else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
