"""
errors
------

배포 오케스트레이션 전반에서 사용하는 예외 계층.

모든 예외는 EdgeDeployError 를 상속하며, 실패한 단계(phase)와
가능한 경우 해결 방법(remediation)을 함께 담는다.
CLI 는 exit_code 를 그대로 프로세스 종료 코드로 사용한다.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 3
EXIT_VERIFICATION_FAILED = 4


class EdgeDeployError(Exception):
    """배포 도구 예외의 공통 부모."""

    exit_code = EXIT_FAILURE

    def __init__(
        self,
        message: str,
        *,
        phase: Optional[str] = None,
        remediation: Optional[str] = None,
    ) -> None:
        self.message = message
        self.phase = phase
        self.remediation = remediation
        super().__init__(message)

    def format_message(self) -> str:
        lines = [self.message]
        if self.phase:
            lines.append(f"단계: {self.phase}")
        if self.remediation:
            lines.append(f"해결 방법: {self.remediation}")
        return "\n".join(lines)


class InvalidCredentialError(EdgeDeployError):
    """토큰이 비어 있거나 원격 검증에 실패한 경우."""


class CloudflareAPIError(EdgeDeployError):
    """Cloudflare API 가 오류 응답을 돌려준 경우."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs: Any) -> None:
        self.status_code = status_code
        super().__init__(message, **kwargs)


class AmbiguousResourceError(EdgeDeployError):
    """계정/존 후보가 여러 개인데 선택할 수 없는 경우(비대화형 모드)."""

    def __init__(self, kind: str, candidates: Sequence[str], **kwargs: Any) -> None:
        self.kind = kind
        self.candidates = list(candidates)
        kwargs.setdefault(
            "remediation",
            f"{kind} 값을 명시적으로 지정하세요 (후보: {', '.join(self.candidates)})",
        )
        super().__init__(f"{kind} 후보가 {len(self.candidates)}개라 자동으로 고를 수 없습니다.", **kwargs)


class ValidationPhaseError(EdgeDeployError):
    """검증 카테고리 하나가 치명적으로 실패한 경우."""

    def __init__(
        self,
        category: str,
        errors: Sequence[str],
        *,
        results: Optional[List[Any]] = None,
        **kwargs: Any,
    ) -> None:
        self.category = category
        self.errors = list(errors)
        self.results = list(results or [])
        kwargs.setdefault("phase", f"validation:{category}")
        summary = "; ".join(self.errors) if self.errors else "원인 미상"
        super().__init__(f"검증 실패 [{category}]: {summary}", **kwargs)


class ResourceConflictError(EdgeDeployError):
    """이미 존재하는 원격 리소스에 대해 처리 방식이 정해지지 않은 경우."""

    def __init__(self, resource: str, message: Optional[str] = None, **kwargs: Any) -> None:
        self.resource = resource
        super().__init__(message or f"리소스가 이미 존재합니다: {resource}", **kwargs)


class CommandExecutionError(EdgeDeployError):
    """외부 명령이 0 이 아닌 코드로 끝났거나 시간 초과된 경우. 버퍼링된 출력을 항상 보관한다."""

    def __init__(
        self,
        cmd: Sequence[str],
        *,
        returncode: Optional[int] = None,
        output: str = "",
        timed_out: bool = False,
        message: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output
        self.timed_out = timed_out
        if message is None:
            joined = " ".join(self.cmd)
            if timed_out:
                message = f"명령 실행이 제한 시간 안에 끝나지 않았습니다: {joined}"
            else:
                message = f"명령 실행 실패: {joined} (exit={returncode})"
        super().__init__(message, **kwargs)

    def format_message(self) -> str:
        text = super().format_message()
        tail = self.output.strip()
        if tail:
            # 마지막 20줄만 보여준다.
            lines = tail.splitlines()[-20:]
            text += "\n출력:\n" + "\n".join(lines)
        return text


class BindingMismatchError(EdgeDeployError):
    """매니페스트에 선언된 바인딩이 원격 상태와 맞지 않는 경우."""

    def __init__(self, binding: str, reason: str, **kwargs: Any) -> None:
        self.binding = binding
        self.reason = reason
        super().__init__(f"바인딩 '{binding}': {reason}", **kwargs)


class UserCancelledError(EdgeDeployError):
    """운영자가 확인 단계에서 거절한 경우. 실패가 아니라 정상 취소로 취급한다."""

    exit_code = EXIT_CANCELLED

    def __init__(self, action: str, **kwargs: Any) -> None:
        self.action = action
        super().__init__(f"운영자가 취소했습니다: {action}", **kwargs)
