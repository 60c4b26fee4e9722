"""Shared fixtures for the policy server tests.

Provides a factory that runs ThreadedPolicyServer in a background
thread, plus blocking and asyncio client helpers that speak the policy
protocol over a kept-open connection.
"""
from __future__ import annotations

import asyncio
import socket
import threading
import time

import pytest

from postfix_policy.domain.actions import Action
from postfix_policy.domain.request import PolicyRequest
from postfix_policy.protocol.codec import encode_request
from postfix_policy.server.async_server import AsyncPolicyServer
from postfix_policy.server.threaded import ThreadedPolicyServer


def verdict_by_recipient(request: PolicyRequest) -> Action:
    """REJECT mail to blocked@, DUNNO otherwise."""
    if request.recipient.startswith("blocked@"):
        return Action.reject("5.7.1 recipient blocked")
    return Action.dunno()


def make_request(recipient: str, **extra: str) -> bytes:
    attributes = {
        "request": "smtpd_access_policy",
        "protocol_state": "RCPT",
        "sender": "alice@example.org",
        "recipient": recipient,
    }
    attributes.update(extra)
    return encode_request(attributes)


@pytest.fixture()
def server_factory():
    """Factory that creates and starts a ThreadedPolicyServer in a background thread.

    Returns a callable that accepts (callback, **server_kwargs) and
    returns the running server. Servers are stopped after the test.
    """
    servers: list[ThreadedPolicyServer] = []

    def _create(callback=verdict_by_recipient, **kwargs) -> ThreadedPolicyServer:
        kwargs.setdefault("max_workers", 4)
        srv = ThreadedPolicyServer(callback, **kwargs)
        t = threading.Thread(target=srv.start, daemon=True)
        t.start()
        assert srv.wait_ready(timeout=5.0)
        servers.append(srv)
        return srv

    yield _create

    for s in servers:
        s.stop()


def read_response(sock: socket.socket) -> bytes:
    """Read exactly one response (through the blank line) from sock."""
    buf = b""
    while not buf.endswith(b"\n\n"):
        chunk = sock.recv(1)
        if not chunk:
            raise ConnectionError(f"connection closed mid-response: {buf!r}")
        buf += chunk
    return buf


def open_client(address, timeout: float = 5.0) -> socket.socket:
    family = socket.AF_UNIX if isinstance(address, str) else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    sock.connect(address)
    return sock


def exchange(address, requests: list[bytes]) -> list[bytes]:
    """Send each request on one connection, reading the reply before the next."""
    sock = open_client(address)
    try:
        responses = []
        for req in requests:
            sock.sendall(req)
            responses.append(read_response(sock))
        return responses
    finally:
        sock.close()


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ---------------------------------------------------------------------------
# Async helpers
# ---------------------------------------------------------------------------

async def start_async_server(callback=verdict_by_recipient, **kwargs) -> AsyncPolicyServer:
    """Create and start an AsyncPolicyServer, wait until ready."""
    srv = AsyncPolicyServer(callback, **kwargs)
    await srv.start()
    await srv.wait_ready()
    return srv


async def async_exchange(srv: AsyncPolicyServer, requests: list[bytes]) -> list[bytes]:
    """Async twin of exchange(): one connection, one reply per request."""
    address = srv.address
    if isinstance(address, str):
        reader, writer = await asyncio.open_unix_connection(address)
    else:
        reader, writer = await asyncio.open_connection(*address)
    try:
        responses = []
        for req in requests:
            writer.write(req)
            await writer.drain()
            responses.append(await asyncio.wait_for(reader.readuntil(b"\n\n"), 5.0))
        return responses
    finally:
        writer.close()
        await writer.wait_closed()
