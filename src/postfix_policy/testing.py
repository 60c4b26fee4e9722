"""Helpers for testing decision callbacks without a real Postfix.

MemoryTransport plays the socket: it hands out canned input on recv()
and collects whatever the loop writes.

    output = handle_connection_response(
        b"request=smtpd_access_policy\\nclient_address=10.0.0.1\\n\\n",
        my_callback,
    )
    assert output == b"action=DUNNO\\n\\n"
"""
from __future__ import annotations

import errno
import io
from typing import Any

from postfix_policy.domain.types import DecisionCallback
from postfix_policy.server.connection import handle_connection


class MemoryTransport:
    """In-memory Transport. recv() returns b"" once the input runs out.

    chunk_size caps how much a single recv() hands back, to exercise
    requests split across reads.
    """

    def __init__(self, data: bytes = b"", chunk_size: int | None = None) -> None:
        self._input = io.BytesIO(data)
        self._output = bytearray()
        self._chunk_size = chunk_size
        self.closed = False
        self.recv_calls = 0

    def recv(self, bufsize: int) -> bytes:
        if self.closed:
            raise OSError(errno.EBADF, "Transport is closed")
        if self._chunk_size is not None:
            bufsize = min(bufsize, self._chunk_size)
        self.recv_calls += 1
        return self._input.read(bufsize)

    def sendall(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError(errno.EPIPE, "Transport is closed")
        self._output += data

    def close(self) -> None:
        self.closed = True

    @property
    def output(self) -> bytes:
        """Everything written so far."""
        return bytes(self._output)


def handle_connection_response(
    data: bytes, callback: DecisionCallback, **options: Any
) -> bytes:
    """Feed ``data`` through a full connection and return the bytes written.

    If the connection ends with an error (framing, callback, ...) that
    error is raised and the partial output is discarded.
    """
    transport = MemoryTransport(data)
    result = handle_connection(transport, callback, **options)
    result.raise_for_error()
    return transport.output
