"""Tests for the sans-IO RequestParser and the blocking RequestAssembler.

Covers: block assembly across arbitrary read boundaries, orderly close
vs truncation, size caps (including bounded memory on a peer that never
sends a newline), duplicates, and back-to-back requests.
"""
from __future__ import annotations

import pytest

from postfix_policy.domain.errors import (
    ConnectionClosed,
    InvalidEscape,
    MalformedLine,
    RequestTooLarge,
    TruncatedRequest,
)
from postfix_policy.protocol.assembler import RequestAssembler
from postfix_policy.protocol.parser import ProtocolLimits, RequestParser
from postfix_policy.testing import MemoryTransport

SAMPLE = (
    b"request=smtpd_access_policy\n"
    b"protocol_state=RCPT\n"
    b"protocol_name=ESMTP\n"
    b"client_address=131.234.189.14\n"
    b"sender=a@example.com\n"
    b"recipient=b@example.com\n"
    b"\n"
)


class EndlessTransport:
    """A peer that streams the same chunk forever and never sends a newline."""

    def __init__(self, chunk: bytes = b"A" * 4096) -> None:
        self._chunk = chunk
        self.bytes_sent = 0

    def recv(self, bufsize: int) -> bytes:
        data = self._chunk[:bufsize]
        self.bytes_sent += len(data)
        return data

    def sendall(self, data: bytes) -> None:
        pass

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# RequestParser
# ---------------------------------------------------------------------------

def test_parser_single_block():
    parser = RequestParser()
    parser.feed(SAMPLE)
    req = parser.next_request()
    assert req is not None
    assert req.request == "smtpd_access_policy"
    assert req.client_address == "131.234.189.14"
    assert list(req) == [
        "request",
        "protocol_state",
        "protocol_name",
        "client_address",
        "sender",
        "recipient",
    ]
    assert parser.next_request() is None
    assert not parser.in_block


def test_parser_needs_more_bytes():
    parser = RequestParser()
    parser.feed(b"request=smtpd_access_policy\nsender=a@")
    assert parser.next_request() is None
    parser.feed(b"example.com\n")
    assert parser.next_request() is None
    parser.feed(b"\n")
    req = parser.next_request()
    assert req is not None and req.sender == "a@example.com"


def test_parser_byte_at_a_time():
    parser = RequestParser()
    results = []
    for i in range(len(SAMPLE)):
        parser.feed(SAMPLE[i:i + 1])
        req = parser.next_request()
        if req is not None:
            results.append(req)
    assert len(results) == 1
    assert results[0].recipient == "b@example.com"


def test_parser_keeps_bytes_of_next_block():
    parser = RequestParser()
    parser.feed(SAMPLE + b"request=second\n")
    first = parser.next_request()
    assert first is not None and first.request == "smtpd_access_policy"
    assert parser.next_request() is None
    assert parser.in_block
    parser.feed(b"\n")
    second = parser.next_request()
    assert second is not None and second.request == "second"


def test_parser_empty_block_is_a_request():
    parser = RequestParser()
    parser.feed(b"\n")
    req = parser.next_request()
    assert req is not None
    assert len(req) == 0


def test_parser_duplicates_last_wins():
    parser = RequestParser()
    parser.feed(b"recipient=a@x\nsender=s@x\nrecipient=b@x\n\n")
    req = parser.next_request()
    assert req["recipient"] == "b@x"
    assert req.duplicates == frozenset({"recipient"})
    assert len(req) == 2


def test_parser_state_resets_between_blocks():
    parser = RequestParser()
    parser.feed(b"a=1\na=2\n\nb=3\n\n")
    first = parser.next_request()
    second = parser.next_request()
    assert dict(first) == {"a": "2"}
    assert dict(second) == {"b": "3"}
    assert second.duplicates == frozenset()


def test_parser_malformed_line():
    parser = RequestParser()
    parser.feed(b"request=smtpd_access_policy\nasdf\n\n")
    with pytest.raises(MalformedLine):
        parser.next_request()


def test_parser_invalid_escape():
    parser = RequestParser()
    parser.feed(b"sender=50%off\n\n")
    with pytest.raises(InvalidEscape):
        parser.next_request()


def test_parser_escaped_sender():
    parser = RequestParser()
    parser.feed(b"sender=a%40b%3dexample.com\n\n")
    req = parser.next_request()
    assert req.sender == "a@b=example.com"


def test_eof_at_boundary_is_orderly():
    parser = RequestParser()
    parser.feed(SAMPLE)
    parser.next_request()
    with pytest.raises(ConnectionClosed):
        parser.eof()


def test_eof_mid_line_is_truncated():
    parser = RequestParser()
    parser.feed(b"request=smtpd_acc")
    assert parser.next_request() is None
    with pytest.raises(TruncatedRequest, match="mid-line"):
        parser.eof()


def test_eof_after_complete_lines_is_truncated():
    parser = RequestParser()
    parser.feed(b"request=smtpd_access_policy\n")
    assert parser.next_request() is None
    with pytest.raises(TruncatedRequest, match="mid-request"):
        parser.eof()


def test_size_cap_on_complete_lines():
    parser = RequestParser(ProtocolLimits(max_request_size=64))
    parser.feed(b"a=" + b"x" * 40 + b"\n" + b"b=" + b"y" * 40 + b"\n\n")
    with pytest.raises(RequestTooLarge):
        parser.next_request()


def test_size_cap_on_unterminated_line():
    parser = RequestParser(ProtocolLimits(max_request_size=64))
    parser.feed(b"a=" + b"x" * 100)
    with pytest.raises(RequestTooLarge):
        parser.next_request()


def test_request_at_exact_cap_is_accepted():
    block = b"a=" + b"x" * 10 + b"\n\n"
    parser = RequestParser(ProtocolLimits(max_request_size=len(block)))
    parser.feed(block)
    assert parser.next_request() == {"a": "x" * 10}


def test_attribute_count_cap():
    parser = RequestParser(ProtocolLimits(max_attributes=3))
    parser.feed(b"a=1\nb=2\nc=3\nd=4\n\n")
    with pytest.raises(RequestTooLarge, match="attributes"):
        parser.next_request()


def test_size_cap_applies_per_block():
    """Many small blocks together may exceed the cap; each one alone does not."""
    block = b"a=" + b"x" * 20 + b"\n\n"
    parser = RequestParser(ProtocolLimits(max_request_size=32))
    parser.feed(block * 10)
    for _ in range(10):
        assert parser.next_request() is not None


@pytest.mark.parametrize(
    "field, value",
    [("max_request_size", 0), ("max_attributes", -1), ("read_size", 0)],
)
def test_limits_must_be_positive(field, value):
    with pytest.raises(ValueError, match=field):
        ProtocolLimits(**{field: value})


# ---------------------------------------------------------------------------
# RequestAssembler (blocking driver)
# ---------------------------------------------------------------------------

def test_assembler_reads_sequential_requests():
    transport = MemoryTransport(SAMPLE * 3, chunk_size=7)
    assembler = RequestAssembler(transport)
    for _ in range(3):
        assert assembler.read_request().recipient == "b@example.com"
    with pytest.raises(ConnectionClosed):
        assembler.read_request()


def test_assembler_empty_connection_closes_cleanly():
    assembler = RequestAssembler(MemoryTransport(b""))
    with pytest.raises(ConnectionClosed):
        assembler.read_request()


def test_assembler_truncated():
    assembler = RequestAssembler(MemoryTransport(SAMPLE[:-1]))
    with pytest.raises(TruncatedRequest):
        assembler.read_request()


def test_assembler_does_not_read_ahead():
    """A buffered complete request is returned without touching the transport."""
    transport = MemoryTransport(SAMPLE * 2)
    assembler = RequestAssembler(transport)
    assembler.read_request()
    calls = transport.recv_calls
    assembler.read_request()
    assert transport.recv_calls == calls


def test_assembler_memory_is_bounded_on_endless_line():
    limits = ProtocolLimits(max_request_size=16 * 1024, read_size=4096)
    transport = EndlessTransport()
    assembler = RequestAssembler(transport, limits)
    with pytest.raises(RequestTooLarge):
        assembler.read_request()
    assert transport.bytes_sent <= limits.max_request_size + limits.read_size
    assert assembler.parser.buffered <= limits.max_request_size + limits.read_size


def test_assembler_propagates_transport_errors():
    class Broken(MemoryTransport):
        def recv(self, bufsize: int) -> bytes:
            raise ConnectionResetError("reset by peer")

    with pytest.raises(ConnectionResetError):
        RequestAssembler(Broken()).read_request()
