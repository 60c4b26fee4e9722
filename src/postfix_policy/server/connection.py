"""Blocking connection loop: read -> decide -> write, until the peer hangs up.

Per-connection flow:
    1. Assemble one PolicyRequest from the transport
    2. Call the decision callback (optionally bounded by a timeout)
    3. Encode the Action and sendall() it
    4. Repeat; the next request is not read until the response is out

Every way a connection can end is classified here and nowhere else:
orderly close, framing error, transport error, callback failure,
callback timeout, or cancellation from another thread. run() reports
which one in a ConnectionResult instead of raising.

Nothing is written after a framing or callback error. The protocol has
no error verb, and a guessed verdict is worse than letting Postfix hit
its own timeout.
"""
from __future__ import annotations

import logging
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from postfix_policy.domain.actions import Action
from postfix_policy.domain.errors import (
    CallbackError,
    CallbackTimeout,
    ConnectionCancelled,
    ConnectionClosed,
    FramingError,
)
from postfix_policy.domain.request import PolicyRequest
from postfix_policy.domain.types import DecisionCallback, Transport
from postfix_policy.protocol.assembler import RequestAssembler, write_action
from postfix_policy.protocol.parser import DEFAULT_LIMITS, ProtocolLimits
from postfix_policy.server.result import ConnectionResult, TerminationReason

log = logging.getLogger(__name__)

ErrorHook = Callable[[PolicyRequest, BaseException], None]


class ConnectionLoop:
    """Serves every request on one connection, then closes it.

    Args:
        transport: connected socket (or anything with recv/sendall/close)
        callback: PolicyRequest -> Action
        limits: size caps for incoming blocks
        callback_timeout: seconds to wait for the callback (None = forever)
        fallback_action: sent when the callback raises; None closes instead
        on_callback_error: called with (request, exception) on every failure
        peer: label used in log messages
    """

    def __init__(
        self,
        transport: Transport,
        callback: DecisionCallback,
        *,
        limits: ProtocolLimits = DEFAULT_LIMITS,
        callback_timeout: float | None = None,
        fallback_action: Action | None = None,
        on_callback_error: ErrorHook | None = None,
        peer: Any = None,
    ) -> None:
        if callback_timeout is not None and callback_timeout <= 0:
            raise ValueError("callback_timeout must be positive")
        self._transport = transport
        self._callback = callback
        self._assembler = RequestAssembler(transport, limits)
        self._callback_timeout = callback_timeout
        self._fallback = fallback_action
        self._on_callback_error = on_callback_error
        self._peer = peer if peer is not None else "connection"
        self._cancelled = threading.Event()
        self._wake: threading.Event | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._close_lock = threading.Lock()
        self._closed = False
        self._requests_handled = 0
        self._callback_failures = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def requests_handled(self) -> int:
        return self._requests_handled

    def cancel(self) -> None:
        """Abandon the connection. Safe to call from any thread, any time.

        Shutting the socket down wakes a recv() blocked in run(); the
        run() thread then sees EOF and reports CANCELLED.
        """
        self._cancelled.set()
        wake = self._wake
        if wake is not None:
            wake.set()
        shutdown = getattr(self._transport, "shutdown", None)
        if shutdown is None:
            self._close_transport()
            return
        try:
            shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected

    def run(self) -> ConnectionResult:
        """Serve until the connection ends. Always closes the transport."""
        try:
            reason, error = self._serve()
        finally:
            self._teardown()
        return ConnectionResult(
            reason=reason,
            error=error,
            requests_handled=self._requests_handled,
            callback_failures=self._callback_failures,
        )

    def _serve(self) -> tuple[TerminationReason, BaseException | None]:
        try:
            while True:
                if self._cancelled.is_set():
                    raise ConnectionCancelled("Connection cancelled")
                request = self._assembler.read_request()
                action = self._decide(request)
                write_action(self._transport, action)
                self._requests_handled += 1
        except ConnectionCancelled as exc:
            log.debug("%s: cancelled", self._peer)
            return TerminationReason.CANCELLED, exc
        except ConnectionClosed as exc:
            if self._cancelled.is_set():
                return self._as_cancelled(exc)
            log.debug(
                "%s: closed by peer after %d requests",
                self._peer, self._requests_handled,
            )
            return TerminationReason.CLOSED, None
        except FramingError as exc:
            if self._cancelled.is_set():
                return self._as_cancelled(exc)
            log.warning("%s: protocol error, closing: %s", self._peer, exc)
            return TerminationReason.FRAMING_ERROR, exc
        except CallbackTimeout as exc:
            log.warning("%s: %s, abandoning connection", self._peer, exc)
            return TerminationReason.CALLBACK_TIMEOUT, exc
        except CallbackError as exc:
            return TerminationReason.CALLBACK_ERROR, exc
        except OSError as exc:
            if self._cancelled.is_set():
                return self._as_cancelled(exc)
            log.debug("%s: transport error: %s", self._peer, exc)
            return TerminationReason.TRANSPORT_ERROR, exc

    @staticmethod
    def _as_cancelled(
        cause: BaseException,
    ) -> tuple[TerminationReason, BaseException]:
        err = ConnectionCancelled("Connection cancelled")
        err.__cause__ = cause
        return TerminationReason.CANCELLED, err

    def _decide(self, request: PolicyRequest) -> Action:
        """Run the callback. Falls back or raises CallbackError on failure."""
        try:
            action = self._invoke(request)
            if not isinstance(action, Action):
                raise TypeError(
                    f"Decision callback returned {type(action).__name__}, "
                    "expected Action"
                )
        except (CallbackTimeout, ConnectionCancelled):
            raise
        except Exception as exc:
            log.exception("%s: decision callback failed", self._peer)
            if self._on_callback_error is not None:
                try:
                    self._on_callback_error(request, exc)
                except Exception:
                    log.exception("%s: on_callback_error hook failed", self._peer)
            if self._fallback is None:
                raise CallbackError(
                    f"Decision callback failed: {exc!r}", request
                ) from exc
            self._callback_failures += 1
            return self._fallback
        return action

    def _invoke(self, request: PolicyRequest) -> Action:
        if self._callback_timeout is None:
            return self._callback(request)

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="policy-callback"
            )
        wake = self._wake = threading.Event()
        future = self._executor.submit(self._callback, request)
        future.add_done_callback(lambda _f: wake.set())
        if self._cancelled.is_set():
            wake.set()
        wake.wait(self._callback_timeout)

        if self._cancelled.is_set():
            raise ConnectionCancelled("Connection cancelled during callback")
        if not future.done():
            future.cancel()
            raise CallbackTimeout(
                f"Decision callback exceeded {self._callback_timeout}s", request
            )
        return future.result()

    def _close_transport(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._transport.close()
        except OSError:
            pass

    def _teardown(self) -> None:
        self._close_transport()
        if self._executor is not None:
            # A timed-out callback may still be running; don't wait for it.
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


def handle_connection(
    transport: Transport, callback: DecisionCallback, **options: Any
) -> ConnectionResult:
    """Serve one connection to completion. Options as for ConnectionLoop."""
    return ConnectionLoop(transport, callback, **options).run()
