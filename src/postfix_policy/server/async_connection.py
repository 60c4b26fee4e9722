"""Async connection loop: same semantics as ConnectionLoop, no threads.

Every socket operation is an await instead of a blocking call. The
decision callback may be a plain function or a coroutine function:

    - plain function, no timeout: called inline (keep it fast, it runs
      on the event loop thread)
    - plain function with a timeout: runs via asyncio.to_thread()
    - coroutine function: awaited, bounded by the timeout if one is set

close() may be called from any coroutine on the same loop. It aborts
the transport: a pending read sees EOF, a drain() stuck behind a peer
that stopped reading is released, and the run() task reports
CANCELLED. writer.close() alone is not enough there, since it waits
for the send buffer to empty first. Cancelling the run() task itself
aborts the connection and re-raises CancelledError.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable

from postfix_policy.domain.actions import Action
from postfix_policy.domain.errors import (
    CallbackError,
    CallbackTimeout,
    ConnectionCancelled,
    ConnectionClosed,
    FramingError,
)
from postfix_policy.domain.request import PolicyRequest
from postfix_policy.domain.types import AsyncDecisionCallback
from postfix_policy.protocol.async_assembler import (
    AsyncRequestAssembler,
    async_write_action,
)
from postfix_policy.protocol.parser import DEFAULT_LIMITS, ProtocolLimits
from postfix_policy.server.connection import ErrorHook
from postfix_policy.server.result import ConnectionResult, TerminationReason

log = logging.getLogger(__name__)


def _is_coroutine_callable(obj: Any) -> bool:
    if inspect.iscoroutinefunction(obj):
        return True
    call = getattr(obj, "__call__", None)
    return inspect.iscoroutinefunction(call)


class AsyncConnectionLoop:
    """Serves every request on one asyncio stream pair, then closes it.

    Args are the same as ConnectionLoop, with the transport split into
    an asyncio.StreamReader / asyncio.StreamWriter pair.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        callback: AsyncDecisionCallback,
        *,
        limits: ProtocolLimits = DEFAULT_LIMITS,
        callback_timeout: float | None = None,
        fallback_action: Action | None = None,
        on_callback_error: ErrorHook | None = None,
        peer: Any = None,
    ) -> None:
        if callback_timeout is not None and callback_timeout <= 0:
            raise ValueError("callback_timeout must be positive")
        self._writer = writer
        self._callback = callback
        self._callback_is_async = _is_coroutine_callable(callback)
        self._assembler = AsyncRequestAssembler(reader, limits)
        self._callback_timeout = callback_timeout
        self._fallback = fallback_action
        self._on_callback_error = on_callback_error
        self._peer = peer if peer is not None else writer.get_extra_info("peername")
        self._cancel_event = asyncio.Event()
        self._requests_handled = 0
        self._callback_failures = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def requests_handled(self) -> int:
        return self._requests_handled

    def close(self) -> None:
        """Abandon the connection; a pending read, drain() or callback wakes up."""
        self._cancel_event.set()
        self._writer.transport.abort()

    async def run(self) -> ConnectionResult:
        """Serve until the connection ends. Always closes the writer."""
        reason = None
        try:
            reason, error = await self._serve()
        except asyncio.CancelledError:
            log.debug("%s: task cancelled", self._peer)
            raise
        finally:
            # Only an orderly close may wait for buffered bytes to flush
            await self._teardown(abort=reason is not TerminationReason.CLOSED)
        return ConnectionResult(
            reason=reason,
            error=error,
            requests_handled=self._requests_handled,
            callback_failures=self._callback_failures,
        )

    async def _serve(self) -> tuple[TerminationReason, BaseException | None]:
        try:
            while True:
                if self._cancel_event.is_set():
                    raise ConnectionCancelled("Connection cancelled")
                request = await self._assembler.read_request()
                action = await self._decide(request)
                await async_write_action(self._writer, action)
                if self._cancel_event.is_set():
                    # drain() returns normally once an aborted transport is gone
                    raise ConnectionCancelled("Connection cancelled during write")
                self._requests_handled += 1
        except ConnectionCancelled as exc:
            log.debug("%s: cancelled", self._peer)
            return TerminationReason.CANCELLED, exc
        except ConnectionClosed as exc:
            if self._cancel_event.is_set():
                return self._as_cancelled(exc)
            log.debug(
                "%s: closed by peer after %d requests",
                self._peer, self._requests_handled,
            )
            return TerminationReason.CLOSED, None
        except FramingError as exc:
            if self._cancel_event.is_set():
                return self._as_cancelled(exc)
            log.warning("%s: protocol error, closing: %s", self._peer, exc)
            return TerminationReason.FRAMING_ERROR, exc
        except CallbackTimeout as exc:
            log.warning("%s: %s, abandoning connection", self._peer, exc)
            return TerminationReason.CALLBACK_TIMEOUT, exc
        except CallbackError as exc:
            return TerminationReason.CALLBACK_ERROR, exc
        except OSError as exc:
            if self._cancel_event.is_set():
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

    async def _decide(self, request: PolicyRequest) -> Action:
        try:
            action = await self._invoke(request)
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

    async def _invoke(self, request: PolicyRequest) -> Action:
        if self._callback_is_async:
            return await self._guard(self._callback(request), request)
        if self._callback_timeout is not None:
            return await self._guard(
                asyncio.to_thread(self._callback, request), request
            )
        result = self._callback(request)
        if inspect.isawaitable(result):
            return await self._guard(result, request)
        return result

    async def _guard(self, awaitable: Awaitable[Action], request: PolicyRequest) -> Action:
        """Await the callback, racing it against the timeout and close()."""
        task = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait},
                timeout=self._callback_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        if self._cancel_event.is_set():
            raise ConnectionCancelled("Connection cancelled during callback")
        raise CallbackTimeout(
            f"Decision callback exceeded {self._callback_timeout}s", request
        )

    async def _teardown(self, abort: bool) -> None:
        if abort:
            self._writer.transport.abort()
        else:
            self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError:
            pass  # peer already gone
