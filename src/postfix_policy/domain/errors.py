"""Exception hierarchy for the policy delegation protocol.

Framing errors end a connection: the protocol has no resynchronization
marker, so nothing after a bad line can be trusted. Transport failures
are left as the builtin OSError family.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from postfix_policy.domain.request import PolicyRequest


class PostfixPolicyError(Exception):
    """Base class for everything raised by this package."""


class ConnectionClosed(PostfixPolicyError):
    """Peer closed the connection at a block boundary. Not an error."""


class ConnectionCancelled(PostfixPolicyError):
    """The connection was closed from our side while a read or write was pending."""


class InvalidAction(PostfixPolicyError, ValueError):
    """An action verb or argument that cannot be put on the wire."""


class FramingError(PostfixPolicyError):
    """The peer sent bytes that do not form a valid attribute block."""


class MalformedLine(FramingError):
    """An attribute line without ``=`` or with an empty name."""

    def __init__(self, line: bytes, detail: str = "missing '='") -> None:
        super().__init__(f"Malformed attribute line ({detail}): {line[:80]!r}")
        self.line = line


class InvalidEscape(FramingError):
    """A ``%`` not followed by two hex digits."""

    def __init__(self, value: bytes, position: int) -> None:
        super().__init__(
            f"Invalid %-escape at offset {position}: {value[:80]!r}"
        )
        self.value = value
        self.position = position


class TruncatedRequest(FramingError):
    """Peer closed the connection in the middle of a request block."""


class RequestTooLarge(FramingError):
    """A request block exceeded the configured size or attribute cap."""


class CallbackError(PostfixPolicyError):
    """The decision callback failed. The original exception is ``__cause__``."""

    def __init__(self, message: str, request: PolicyRequest | None = None) -> None:
        super().__init__(message)
        self.request = request


class CallbackTimeout(CallbackError):
    """The decision callback did not return within the configured timeout."""
