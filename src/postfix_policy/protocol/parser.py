"""Sans-IO request parser: bytes in, PolicyRequest out.

Block format:
    name=value\\n
    name=value\\n
    \\n                 <- empty line ends the block

The parser owns the receive buffer and the pending attribute mapping.
The blocking and async assemblers only move bytes from their transport
into feed() and pull complete requests out of next_request().

Memory bound: a line that has no terminator yet is measured as soon as
it is fed, so the buffer never holds more than max_request_size plus
one read's worth of bytes, whatever the peer sends.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import NoReturn

from postfix_policy.domain.errors import (
    ConnectionClosed,
    RequestTooLarge,
    TruncatedRequest,
)
from postfix_policy.domain.request import PolicyRequest
from postfix_policy.protocol.codec import decode_attribute_line

log = logging.getLogger(__name__)

MAX_REQUEST_SIZE = 64 * 1024   # real requests are ~1 KB
MAX_ATTRIBUTES = 1024          # Postfix sends ~40
READ_SIZE = 4096


@dataclass(frozen=True, slots=True)
class ProtocolLimits:
    """Per-connection caps against a misbehaving peer."""
    max_request_size: int = MAX_REQUEST_SIZE
    max_attributes: int = MAX_ATTRIBUTES
    read_size: int = READ_SIZE

    def __post_init__(self) -> None:
        for name in ("max_request_size", "max_attributes", "read_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive")


DEFAULT_LIMITS = ProtocolLimits()


class RequestParser:
    """Incremental attribute-block parser for one connection."""

    def __init__(self, limits: ProtocolLimits = DEFAULT_LIMITS) -> None:
        self._limits = limits
        self._buffer = bytearray()
        self._pending: dict[str, str] = {}
        self._duplicates: set[str] = set()
        self._block_size = 0   # bytes of the current block already consumed
        self._lines = 0

    @property
    def limits(self) -> ProtocolLimits:
        return self._limits

    @property
    def buffered(self) -> int:
        """Bytes received but not yet consumed."""
        return len(self._buffer)

    @property
    def in_block(self) -> bool:
        """True once part of a block has been seen."""
        return self._block_size > 0 or bool(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer += data

    def next_request(self) -> PolicyRequest | None:
        """Return the next complete request, or None if more bytes are needed.

        Raises:
            RequestTooLarge: size or attribute cap exceeded
            MalformedLine / InvalidEscape: from the codec
        """
        max_size = self._limits.max_request_size
        while True:
            end = self._buffer.find(b"\n")
            if end < 0:
                if self._block_size + len(self._buffer) > max_size:
                    raise RequestTooLarge(
                        f"Request exceeds {max_size} bytes"
                    )
                return None

            self._block_size += end + 1
            if self._block_size > max_size:
                raise RequestTooLarge(f"Request exceeds {max_size} bytes")
            line = bytes(self._buffer[:end])
            del self._buffer[:end + 1]

            if not line:
                return self._dispatch()

            self._lines += 1
            if self._lines > self._limits.max_attributes:
                raise RequestTooLarge(
                    f"Request has more than {self._limits.max_attributes} attributes"
                )
            name, value = decode_attribute_line(line)
            if name in self._pending:
                self._duplicates.add(name)
            self._pending[name] = value

    def eof(self) -> NoReturn:
        """Peer closed the stream. Decide whether that was orderly."""
        if self._buffer:
            raise TruncatedRequest(
                f"Connection closed mid-line ({len(self._buffer)} bytes pending)"
            )
        if self._block_size:
            raise TruncatedRequest(
                f"Connection closed mid-request ({self._lines} attributes read)"
            )
        raise ConnectionClosed("Connection closed by peer")

    def _dispatch(self) -> PolicyRequest:
        if self._duplicates:
            log.debug("Duplicate attributes (last wins): %s", sorted(self._duplicates))
        req = PolicyRequest(self._pending, frozenset(self._duplicates))
        self._pending = {}
        self._duplicates = set()
        self._block_size = 0
        self._lines = 0
        return req
