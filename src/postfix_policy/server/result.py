"""How a connection ended, as reported by both connection loops."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto


class TerminationReason(Enum):
    CLOSED = auto()            # peer closed at a block boundary
    FRAMING_ERROR = auto()
    TRANSPORT_ERROR = auto()
    CALLBACK_ERROR = auto()
    CALLBACK_TIMEOUT = auto()
    CANCELLED = auto()

    def is_error(self) -> bool:
        """Everything except an orderly close."""
        return self is not TerminationReason.CLOSED


@dataclass(slots=True)
class ConnectionResult:
    """Outcome of one ConnectionLoop.run()."""
    reason: TerminationReason
    error: BaseException | None = None
    requests_handled: int = 0
    callback_failures: int = 0   # answered with the fallback action

    @property
    def ok(self) -> bool:
        return not self.reason.is_error()

    def raise_for_error(self) -> None:
        """Re-raise the exception that ended the connection, if any."""
        if self.error is not None:
            raise self.error
