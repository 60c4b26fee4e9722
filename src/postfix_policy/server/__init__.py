"""Connection loops and the servers that run them.

ConnectionLoop / AsyncConnectionLoop are the core: one connection,
read -> decide -> write until it ends. ThreadedPolicyServer and
AsyncPolicyServer are optional listeners that run one loop per
accepted connection.
"""
from postfix_policy.server.async_connection import AsyncConnectionLoop
from postfix_policy.server.async_server import AsyncPolicyServer
from postfix_policy.server.connection import ConnectionLoop, handle_connection
from postfix_policy.server.result import ConnectionResult, TerminationReason
from postfix_policy.server.threaded import ThreadedPolicyServer

__all__ = [
    "AsyncConnectionLoop",
    "AsyncPolicyServer",
    "ConnectionLoop",
    "handle_connection",
    "ConnectionResult",
    "TerminationReason",
    "ThreadedPolicyServer",
]
