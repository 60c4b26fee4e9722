"""Blocking request assembler: pulls bytes from a Transport until a block is complete."""
from __future__ import annotations

from postfix_policy.domain.actions import Action
from postfix_policy.domain.request import PolicyRequest
from postfix_policy.domain.types import Transport
from postfix_policy.protocol.codec import encode_action
from postfix_policy.protocol.parser import DEFAULT_LIMITS, ProtocolLimits, RequestParser


class RequestAssembler:
    """Reads one PolicyRequest per call from a blocking transport.

    Usage:
        assembler = RequestAssembler(sock)
        request = assembler.read_request()
    """

    def __init__(
        self, transport: Transport, limits: ProtocolLimits = DEFAULT_LIMITS
    ) -> None:
        self._transport = transport
        self._parser = RequestParser(limits)

    @property
    def parser(self) -> RequestParser:
        return self._parser

    def read_request(self) -> PolicyRequest:
        """Block until a full request is available.

        Raises:
            ConnectionClosed: peer closed at a block boundary
            TruncatedRequest: peer closed mid-block
            RequestTooLarge / MalformedLine / InvalidEscape: bad input
            OSError: transport failure
        """
        read_size = self._parser.limits.read_size
        while True:
            req = self._parser.next_request()
            if req is not None:
                return req
            chunk = self._transport.recv(read_size)
            if not chunk:
                self._parser.eof()
            self._parser.feed(chunk)


def write_action(transport: Transport, action: Action) -> None:
    """Encode and send one response in a single sendall call."""
    transport.sendall(encode_action(action))
