"""Threaded policy server: accept loop + one ConnectionLoop per connection.

Architecture:
    Main thread: socket.accept() in a loop
    Worker threads: ThreadPoolExecutor runs each connection's loop
    Per-connection flow: read -> decide -> respond, repeated until
    Postfix closes the connection (it keeps connections open and reuses
    them for many requests)

Listens on TCP (host/port) or on a Unix domain socket (unix_path), the
two transports Postfix's check_policy_service supports.

max_workers bounds concurrent connections; further connections wait in
the executor queue. Size it to at least the smtpd process limit in
master.cf, or Postfix will see timeouts.
"""
from __future__ import annotations

import functools
import logging
import os
import socket
import stat
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from postfix_policy.domain.actions import Action
from postfix_policy.domain.types import DecisionCallback
from postfix_policy.protocol.parser import DEFAULT_LIMITS, ProtocolLimits
from postfix_policy.server.connection import ConnectionLoop, ErrorHook
from postfix_policy.server.result import ConnectionResult

log = logging.getLogger(__name__)


def remove_stale_socket(path: str) -> None:
    """Unlink a leftover Unix socket file. Refuses to delete anything else."""
    try:
        mode = os.stat(path).st_mode
    except FileNotFoundError:
        return
    if not stat.S_ISSOCK(mode):
        raise FileExistsError(f"{path} exists and is not a socket")
    os.unlink(path)


class ThreadedPolicyServer:
    """Policy server using a thread pool.

    Args:
        callback: PolicyRequest -> Action, shared by every connection
        host: Bind address (default "127.0.0.1")
        port: Bind port (default 0 = OS picks a free port)
        unix_path: listen on this Unix socket instead of TCP
        max_workers: Thread pool size (default 16)
        limits / callback_timeout / fallback_action / on_callback_error:
            passed to every ConnectionLoop
    """

    def __init__(
        self,
        callback: DecisionCallback,
        host: str = "127.0.0.1",
        port: int = 0,
        unix_path: str | None = None,
        max_workers: int = 16,
        limits: ProtocolLimits = DEFAULT_LIMITS,
        callback_timeout: float | None = None,
        fallback_action: Action | None = None,
        on_callback_error: ErrorHook | None = None,
    ) -> None:
        self._callback = callback
        self._host = host
        self._port = port
        self._unix_path = unix_path
        self._max_workers = max_workers
        self._loop_options: dict[str, Any] = {
            "limits": limits,
            "callback_timeout": callback_timeout,
            "fallback_action": fallback_action,
            "on_callback_error": on_callback_error,
        }
        self._server_socket: socket.socket | None = None
        self._running = False
        self._executor: ThreadPoolExecutor | None = None
        self._active: set[ConnectionLoop] = set()
        self._connections_handled = 0
        self._requests_processed = 0
        self._lock = threading.Lock()
        self._ready = threading.Event()  # signals when accept loop is running

    @property
    def address(self) -> tuple[str, int] | str:
        """(host, port) for TCP, the socket path for Unix. Valid after start()."""
        if self._server_socket is None:
            raise RuntimeError("Server not started")
        return self._server_socket.getsockname()

    def _bind(self) -> socket.socket:
        if self._unix_path is not None:
            remove_stale_socket(self._unix_path)
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.bind(self._unix_path)
        else:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._host, self._port))
        return sock

    def start(self) -> None:
        """Bind socket and start accept loop. Blocks until stop() is called."""
        self._server_socket = self._bind()
        self._server_socket.listen(128)
        self._server_socket.settimeout(0.5)
        self._running = True
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="policy-conn"
        )
        log.info("Policy server listening on %s", self.address)
        self._ready.set()
        self._accept_loop()

    def stop(self) -> None:
        """Shutdown: stop accepting, cancel open connections, drain the pool."""
        self._running = False
        with self._lock:
            active = list(self._active)
        for loop in active:
            loop.cancel()
        if self._executor:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        if self._server_socket:
            try:
                self._server_socket.close()
            except OSError:
                pass
            self._server_socket = None
        if self._unix_path is not None:
            try:
                os.unlink(self._unix_path)
            except FileNotFoundError:
                pass
        log.info("Policy server stopped")

    def wait_ready(self, timeout: float = 5.0) -> bool:
        """Block until the accept loop is running. For test setup."""
        return self._ready.wait(timeout=timeout)

    def _accept_loop(self) -> None:
        """Accept connections and submit to thread pool.

        Uses socket timeout (0.5s) to periodically check self._running.
        stop() may clear _server_socket and _executor at any point, so
        both are read once into locals.
        """
        server_socket = self._server_socket
        while self._running and server_socket is not None:
            try:
                client_sock, addr = server_socket.accept()
            except socket.timeout:
                continue
            except OSError:
                break  # socket closed by stop()
            client_sock.settimeout(None)
            executor = self._executor
            if executor is None:
                client_sock.close()
                break
            try:
                future = executor.submit(self._handle_connection, client_sock, addr)
            except RuntimeError:
                # executor already shut down by stop()
                client_sock.close()
                break
            future.add_done_callback(
                functools.partial(self._close_if_cancelled, client_sock)
            )

    @staticmethod
    def _close_if_cancelled(client_sock: socket.socket, future: Future) -> None:
        """Close a connection that stop() dropped from the queue unserved."""
        if future.cancelled():
            client_sock.close()

    def _handle_connection(self, client_sock: socket.socket, addr: Any) -> None:
        """Run one ConnectionLoop to completion and record the outcome."""
        peer = addr or "unix-client"
        loop = ConnectionLoop(
            client_sock, self._callback, peer=peer, **self._loop_options
        )
        with self._lock:
            self._active.add(loop)
        if not self._running:
            loop.cancel()
        try:
            result = loop.run()
            self._record(peer, result)
        except Exception:
            log.exception("Error handling %s", peer)
        finally:
            with self._lock:
                self._active.discard(loop)
                self._connections_handled += 1
                self._requests_processed += loop.requests_handled

    @staticmethod
    def _record(peer: Any, result: ConnectionResult) -> None:
        if result.ok:
            log.debug("%s: done, %d requests", peer, result.requests_handled)
        else:
            log.info(
                "%s: connection ended (%s) after %d requests",
                peer, result.reason.name, result.requests_handled,
            )

    @property
    def connections_handled(self) -> int:
        """Connections that have finished (thread-safe read)."""
        with self._lock:
            return self._connections_handled

    @property
    def requests_processed(self) -> int:
        """Responses written on finished connections (thread-safe read)."""
        with self._lock:
            return self._requests_processed

    @property
    def active_connections(self) -> int:
        with self._lock:
            return len(self._active)
