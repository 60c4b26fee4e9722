"""Server side of the Postfix SMTP access policy delegation protocol.

    from postfix_policy import Action, handle_connection

    def decide(request):
        if request.sender.endswith("@spam.example"):
            return Action.reject("5.7.1 blocked")
        return Action.dunno()

    handle_connection(conn, decide)
"""
from postfix_policy.domain import (
    Action,
    ActionVerb,
    CallbackError,
    CallbackTimeout,
    ConnectionCancelled,
    ConnectionClosed,
    FramingError,
    InvalidAction,
    InvalidEscape,
    MalformedLine,
    PolicyRequest,
    PostfixPolicyError,
    RequestTooLarge,
    TruncatedRequest,
)
from postfix_policy.protocol import ProtocolLimits, encode_action, escape, unescape
from postfix_policy.server import (
    AsyncConnectionLoop,
    AsyncPolicyServer,
    ConnectionLoop,
    ConnectionResult,
    TerminationReason,
    ThreadedPolicyServer,
    handle_connection,
)

__version__ = "0.1.0"

__all__ = [
    "Action",
    "ActionVerb",
    "CallbackError",
    "CallbackTimeout",
    "ConnectionCancelled",
    "ConnectionClosed",
    "FramingError",
    "InvalidAction",
    "InvalidEscape",
    "MalformedLine",
    "PolicyRequest",
    "PostfixPolicyError",
    "RequestTooLarge",
    "TruncatedRequest",
    "ProtocolLimits",
    "encode_action",
    "escape",
    "unescape",
    "AsyncConnectionLoop",
    "AsyncPolicyServer",
    "ConnectionLoop",
    "ConnectionResult",
    "TerminationReason",
    "ThreadedPolicyServer",
    "handle_connection",
]
