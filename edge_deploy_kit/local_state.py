"""
local_state
-----------

여러 번의 실행 사이에 공유되는 로컬 상태 파일 처리.
(토큰 캐시, 시크릿 파일, 도메인/환경별 저장 설정, 롤백 계획)

동시에 실행 중인 다른 프로세스가 반쯤 쓰인 파일을 읽지 않도록
항상 같은 디렉토리의 임시 파일에 쓴 뒤 os.replace 로 교체한다.
"""

from __future__ import annotations

import json
import os
import tempfile
from typing import Any, Dict, Optional

from .logging_utils import get_logger
from .models import utc_now


logger = get_logger(__name__)


def atomic_write_text(path: str, content: str, *, mode: Optional[int] = None) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def atomic_write_json(path: str, data: Any, *, mode: Optional[int] = None) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n", mode=mode)


def read_json(path: str) -> Optional[Any]:
    if not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def domain_slug(domain: str) -> str:
    return domain.strip().lower().replace(".", "-")


class SavedConfigStore:
    """
    도메인/환경별로 마지막 배포 설정을 저장해 다음 실행에서 재수집을 건너뛴다.
    경로: <state_dir>/config/<domain>/<environment>.json
    """

    def __init__(self, state_dir: str) -> None:
        self.root = os.path.join(state_dir, "config")

    def path_for(self, domain: str, environment: str) -> str:
        return os.path.join(self.root, domain, f"{environment}.json")

    def load(self, domain: str, environment: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(domain, environment)
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            logger.warning("저장된 설정을 읽지 못해 무시합니다: %s (%s)", path, e)
            return None
        if data is not None and not isinstance(data, dict):
            logger.warning("저장된 설정 형식이 올바르지 않아 무시합니다: %s", path)
            return None
        return data

    def save(self, domain: str, environment: str, data: Dict[str, Any]) -> str:
        path = self.path_for(domain, environment)
        payload = dict(data)
        payload["domain"] = domain
        payload["environment"] = environment
        payload["updated"] = utc_now().isoformat()
        atomic_write_json(path, payload)
        logger.info("배포 설정을 저장했습니다: %s", path)
        return path
