"""
prompts
-------

운영자와의 대화(예/아니오, 선택, 텍스트 입력)를 추상화한 OperatorInterface.

워크플로는 click 을 직접 호출하지 않고 이 인터페이스만 사용하므로
CI(비대화형)나 테스트(스크립트 응답)에서 구현체만 바꿔 끼울 수 있다.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import click

from .errors import AmbiguousResourceError


class OperatorInterface(ABC):
    interactive = True

    @abstractmethod
    def confirm(self, question: str, default: bool = False) -> bool:
        ...

    @abstractmethod
    def choose(self, question: str, options: Sequence[str], default_index: Optional[int] = 0) -> int:
        """options 중 하나를 골라 0-based index 를 돌려준다."""

    @abstractmethod
    def ask_text(self, question: str, default: Optional[str] = None, secret: bool = False) -> str:
        ...

    def show(self, message: str) -> None:
        click.echo(message)


class ClickOperator(OperatorInterface):
    def confirm(self, question: str, default: bool = False) -> bool:
        return click.confirm(question, default=default)

    def choose(self, question: str, options: Sequence[str], default_index: Optional[int] = 0) -> int:
        click.echo(question)
        for idx, option in enumerate(options, start=1):
            click.echo(f"  {idx}) {option}")
        default = None if default_index is None else default_index + 1
        picked = click.prompt(
            "번호를 선택하세요",
            type=click.IntRange(1, len(options)),
            default=default,
        )
        return int(picked) - 1

    def ask_text(self, question: str, default: Optional[str] = None, secret: bool = False) -> str:
        value = click.prompt(question, default=default, hide_input=secret, show_default=not secret)
        return str(value).strip()


class NonInteractiveOperator(OperatorInterface):
    """
    CI 용. 모든 질문에 기본값으로 답하고, 기본값이 없는 질문은 예외로 끝낸다.
    """

    interactive = False

    def confirm(self, question: str, default: bool = False) -> bool:
        return default

    def choose(self, question: str, options: Sequence[str], default_index: Optional[int] = 0) -> int:
        if default_index is None:
            raise AmbiguousResourceError(question, options)
        return default_index

    def ask_text(self, question: str, default: Optional[str] = None, secret: bool = False) -> str:
        if default is None:
            raise AmbiguousResourceError(question, [], remediation="비대화형 모드에서는 값을 인자로 지정하세요")
        return default

    def show(self, message: str) -> None:
        click.echo(message)


class ScriptedOperator(OperatorInterface):
    """
    미리 정한 응답을 순서대로 돌려주는 구현체. 질문 기록(prompts)을 남긴다.
    응답이 소진되면 기본값을 사용한다.
    """

    def __init__(self, answers: Optional[Iterable[Any]] = None, *, interactive: bool = True) -> None:
        self._answers: deque[Any] = deque(answers or [])
        self.interactive = interactive
        self.prompts: List[Tuple[str, str]] = []
        self.messages: List[str] = []

    def _next(self, default: Any) -> Any:
        if self._answers:
            return self._answers.popleft()
        return default

    def confirm(self, question: str, default: bool = False) -> bool:
        self.prompts.append(("confirm", question))
        return bool(self._next(default))

    def choose(self, question: str, options: Sequence[str], default_index: Optional[int] = 0) -> int:
        self.prompts.append(("choose", question))
        picked = self._next(default_index)
        if picked is None:
            raise AmbiguousResourceError(question, options)
        if isinstance(picked, str):
            return list(options).index(picked)
        return int(picked)

    def ask_text(self, question: str, default: Optional[str] = None, secret: bool = False) -> str:
        self.prompts.append(("text", question))
        value = self._next(default)
        if value is None:
            raise AmbiguousResourceError(question, [])
        return str(value)

    def show(self, message: str) -> None:
        self.messages.append(message)
