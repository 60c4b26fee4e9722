"""Domain model for postfix-policy.

Re-exports all public types for convenient access:
    from postfix_policy.domain import Action, PolicyRequest, MalformedLine
"""
from postfix_policy.domain.actions import Action, ActionVerb
from postfix_policy.domain.errors import (
    CallbackError,
    CallbackTimeout,
    ConnectionCancelled,
    ConnectionClosed,
    FramingError,
    InvalidAction,
    InvalidEscape,
    MalformedLine,
    PostfixPolicyError,
    RequestTooLarge,
    TruncatedRequest,
)
from postfix_policy.domain.request import PolicyRequest
from postfix_policy.domain.types import (
    AsyncDecisionCallback,
    AttributeName,
    AttributeValue,
    DecisionCallback,
    Transport,
)

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
    "PostfixPolicyError",
    "RequestTooLarge",
    "TruncatedRequest",
    "PolicyRequest",
    "AsyncDecisionCallback",
    "AttributeName",
    "AttributeValue",
    "DecisionCallback",
    "Transport",
]
