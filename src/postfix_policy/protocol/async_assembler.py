"""Async version of the request assembler.

Same parser and the same framing as assembler.py, but reads from an
asyncio.StreamReader. A blocking sock.recv() inside a coroutine would
stall every other connection on the event loop; reader.read() suspends
instead.
"""
from __future__ import annotations

import asyncio

from postfix_policy.domain.actions import Action
from postfix_policy.domain.request import PolicyRequest
from postfix_policy.protocol.codec import encode_action
from postfix_policy.protocol.parser import DEFAULT_LIMITS, ProtocolLimits, RequestParser


class AsyncRequestAssembler:
    """Reads one PolicyRequest per call from an asyncio stream."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        limits: ProtocolLimits = DEFAULT_LIMITS,
    ) -> None:
        self._reader = reader
        self._parser = RequestParser(limits)

    @property
    def parser(self) -> RequestParser:
        return self._parser

    async def read_request(self) -> PolicyRequest:
        """Suspend until a full request is available.

        Raises the same exceptions as RequestAssembler.read_request().
        """
        read_size = self._parser.limits.read_size
        while True:
            req = self._parser.next_request()
            if req is not None:
                return req
            chunk = await self._reader.read(read_size)
            if not chunk:
                self._parser.eof()
            self._parser.feed(chunk)


async def async_write_action(writer: asyncio.StreamWriter, action: Action) -> None:
    """Write one response and wait for the send buffer to drain.

    drain() applies backpressure: if the peer stops reading, the
    coroutine suspends here instead of buffering without limit.
    """
    writer.write(encode_action(action))
    await writer.drain()
