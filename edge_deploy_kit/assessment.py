"""
assessment
----------

배포 직전 추가 점검(보안/컴플라이언스 등)을 끼워 넣는 확장 지점.
구현체는 파이프라인 조립 시점에 주입하며, 기본값은 아무것도 하지 않는 NoOpAssessmentProvider 다.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from .discovery import ManifestInfo
from .models import DeploymentConfig


@dataclass(frozen=True)
class Finding:
    rule: str
    message: str
    blocking: bool = False


@dataclass
class AssessmentResult:
    findings: List[Finding] = field(default_factory=list)

    @property
    def blocking(self) -> List[Finding]:
        return [f for f in self.findings if f.blocking]


class AssessmentProvider(ABC):
    name = "assessment"

    @abstractmethod
    def assess(self, config: DeploymentConfig, manifest: Optional[ManifestInfo]) -> AssessmentResult:
        ...


class NoOpAssessmentProvider(AssessmentProvider):
    name = "noop"

    def assess(self, config: DeploymentConfig, manifest: Optional[ManifestInfo]) -> AssessmentResult:
        return AssessmentResult()
