"""postfix-policy CLI entry point.

Usage: postfix-policy dump [--unix PATH | --host HOST --port PORT]

Point Postfix at it with, for example:
    smtpd_recipient_restrictions = ..., check_policy_service inet:127.0.0.1:10040
"""
import argparse
import asyncio
import logging
import sys
import threading

from postfix_policy.domain.actions import Action
from postfix_policy.domain.errors import InvalidAction
from postfix_policy.domain.request import PolicyRequest


class RequestDumper:
    """Decision callback that prints each request and returns a fixed verdict.

    Shared by every connection, so the counter and stdout are guarded.
    """

    def __init__(self, action: Action, out=None) -> None:
        self._action = action
        self._out = out if out is not None else sys.stdout
        self._lock = threading.Lock()
        self._count = 0

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def __call__(self, request: PolicyRequest) -> Action:
        with self._lock:
            self._count += 1
            number = self._count
            lines = [f"Request #{number} (instance {request.instance or '-'})"]
            lines.extend(f"{name}={value}" for name, value in request.items())
            lines.append(f"End of request #{number} -> {self._action}")
            self._out.write("\n".join(lines) + "\n")
            self._out.flush()
        return self._action


def _add_dump_parser(subparsers: argparse._SubParsersAction) -> None:
    p = subparsers.add_parser(
        "dump",
        help="Print every policy request and answer with a fixed action.",
    )
    p.add_argument(
        "--unix", metavar="PATH", default=None,
        help="Listen on this Unix socket instead of TCP.",
    )
    p.add_argument(
        "--host", default="127.0.0.1",
        help="TCP bind address (default: 127.0.0.1)",
    )
    p.add_argument(
        "--port", type=int, default=10040,
        help="TCP port (default: 10040)",
    )
    p.add_argument(
        "--action", default="DUNNO",
        help="Verb to answer every request with (default: DUNNO)",
    )
    p.add_argument(
        "--message", default="",
        help="Optional text after the verb, e.g. an SMTP reply.",
    )
    p.add_argument(
        "--workers", type=int, default=16,
        help="Thread pool size for the threaded server (default: 16)",
    )
    p.add_argument(
        "--callback-timeout", type=float, default=None,
        help="Abandon a connection if a decision takes longer (seconds).",
    )
    p.add_argument(
        "--async", dest="use_async", action="store_true",
        help="Use the asyncio server instead of the thread pool.",
    )
    p.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )


def _run_dump(args: argparse.Namespace) -> None:
    from postfix_policy.server.async_server import AsyncPolicyServer
    from postfix_policy.server.threaded import ThreadedPolicyServer

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        action = Action(args.action, args.message)
    except InvalidAction as exc:
        sys.exit(f"postfix-policy: {exc}")
    dumper = RequestDumper(action)
    common = dict(
        host=args.host,
        port=args.port,
        unix_path=args.unix,
        callback_timeout=args.callback_timeout,
    )

    if args.use_async:
        server = AsyncPolicyServer(dumper, **common)
        try:
            asyncio.run(server.serve_forever())
        except KeyboardInterrupt:
            pass
    else:
        server = ThreadedPolicyServer(dumper, max_workers=args.workers, **common)
        try:
            server.start()
        except KeyboardInterrupt:
            pass
        finally:
            server.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="postfix-policy",
        description="Postfix SMTP access policy delegation server.",
    )
    subparsers = parser.add_subparsers(dest="command")

    _add_dump_parser(subparsers)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "dump":
        _run_dump(args)
