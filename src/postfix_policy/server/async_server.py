"""Async policy server -- same behavior as ThreadedPolicyServer, no threads.

Architecture:
    Single thread, single event loop.
    asyncio.start_server() / start_unix_server() accepts connections.
    Each connection is an AsyncConnectionLoop coroutine on the event loop.

Policy lookups usually wait on something (DNS, a database, an HTTP
API). With coroutine callbacks those waits overlap for free; the
threaded server needs a worker per concurrently stalled connection.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from postfix_policy.domain.actions import Action
from postfix_policy.domain.types import AsyncDecisionCallback
from postfix_policy.protocol.parser import DEFAULT_LIMITS, ProtocolLimits
from postfix_policy.server.async_connection import AsyncConnectionLoop
from postfix_policy.server.connection import ErrorHook
from postfix_policy.server.threaded import remove_stale_socket

log = logging.getLogger(__name__)


class AsyncPolicyServer:
    """Asyncio policy server.

    Args:
        callback: PolicyRequest -> Action, or a coroutine function
        host: Bind address (default "127.0.0.1").
        port: Bind port (default 0 = OS picks a free port).
        unix_path: listen on this Unix socket instead of TCP.
        limits / callback_timeout / fallback_action / on_callback_error:
            passed to every AsyncConnectionLoop.
    """

    def __init__(
        self,
        callback: AsyncDecisionCallback,
        host: str = "127.0.0.1",
        port: int = 0,
        unix_path: str | None = None,
        limits: ProtocolLimits = DEFAULT_LIMITS,
        callback_timeout: float | None = None,
        fallback_action: Action | None = None,
        on_callback_error: ErrorHook | None = None,
    ) -> None:
        self._callback = callback
        self._host = host
        self._port = port
        self._unix_path = unix_path
        self._loop_options: dict[str, Any] = {
            "limits": limits,
            "callback_timeout": callback_timeout,
            "fallback_action": fallback_action,
            "on_callback_error": on_callback_error,
        }
        self._server: asyncio.AbstractServer | None = None
        self._active: dict[AsyncConnectionLoop, asyncio.Task] = {}
        self._connections_handled: int = 0
        self._requests_processed: int = 0
        self._ready = asyncio.Event()
        self._bound_port: int = 0

    @property
    def address(self) -> tuple[str, int] | str:
        """(host, port) for TCP, the socket path for Unix."""
        if self._unix_path is not None:
            return self._unix_path
        return (self._host, self._bound_port)

    @property
    def connections_handled(self) -> int:
        return self._connections_handled

    @property
    def requests_processed(self) -> int:
        return self._requests_processed

    @property
    def active_connections(self) -> int:
        return len(self._active)

    async def start(self) -> None:
        """Start listening. Returns once the server accepts connections."""
        if self._unix_path is not None:
            remove_stale_socket(self._unix_path)
            self._server = await asyncio.start_unix_server(
                self._handle_connection, path=self._unix_path
            )
        else:
            self._server = await asyncio.start_server(
                self._handle_connection, self._host, self._port
            )
            # Grab the actual bound port (important when port=0)
            socks = self._server.sockets
            if socks:
                self._bound_port = socks[0].getsockname()[1]
        log.info("Policy server listening on %s", self.address)
        self._ready.set()

    async def stop(self) -> None:
        """Shutdown: stop accepting, close open connections, wait for them."""
        server, self._server = self._server, None
        if server is not None:
            server.close()

        for loop in list(self._active):
            loop.close()
        tasks = list(self._active.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if server is not None:
            await server.wait_closed()
        if self._unix_path is not None:
            try:
                os.unlink(self._unix_path)
            except FileNotFoundError:
                pass
        log.info("Policy server stopped")

    async def serve_forever(self) -> None:
        """start() and then run until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    async def wait_ready(self, timeout: float = 5.0) -> None:
        """Wait until the server is accepting connections."""
        await asyncio.wait_for(self._ready.wait(), timeout=timeout)

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peer = writer.get_extra_info("peername") or "unix-client"
        loop = AsyncConnectionLoop(
            reader, writer, self._callback, peer=peer, **self._loop_options
        )
        self._active[loop] = asyncio.current_task()
        try:
            result = await loop.run()
            if result.ok:
                log.debug("%s: done, %d requests", peer, result.requests_handled)
            else:
                log.info(
                    "%s: connection ended (%s) after %d requests",
                    peer, result.reason.name, result.requests_handled,
                )
        except Exception:
            log.exception("Error handling connection %s", peer)
        finally:
            self._active.pop(loop, None)
            self._connections_handled += 1
            self._requests_processed += loop.requests_handled
