"""Shared type aliases and collaborator protocols."""
from __future__ import annotations

from typing import TYPE_CHECKING, Awaitable, Protocol, TypeAlias, Union

if TYPE_CHECKING:
    from postfix_policy.domain.actions import Action
    from postfix_policy.domain.request import PolicyRequest

AttributeName: TypeAlias = str
AttributeValue: TypeAlias = str


class DecisionCallback(Protocol):
    """Anything that turns a request into a verdict, or raises."""

    def __call__(self, request: PolicyRequest) -> Action: ...


class AsyncDecisionCallback(Protocol):
    """Async loops also accept callbacks returning an awaitable Action."""

    def __call__(
        self, request: PolicyRequest
    ) -> Union[Action, Awaitable[Action]]: ...


class Transport(Protocol):
    """Byte-stream connection used by the blocking loop.

    recv() returns b"" on orderly shutdown and raises OSError on failure.
    A connected socket.socket satisfies this as-is.
    """

    def recv(self, bufsize: int) -> bytes: ...

    def sendall(self, data: bytes) -> None: ...

    def close(self) -> None: ...
