"""Shared fixtures for connection-loop tests.

Provides canned Postfix requests and a few decision callbacks.
"""
from __future__ import annotations

import pytest

from postfix_policy.domain.actions import Action
from postfix_policy.domain.request import PolicyRequest

# What Postfix 3.x sends at RCPT TO (trimmed)
RCPT_REQUEST = (
    b"request=smtpd_access_policy\n"
    b"protocol_state=RCPT\n"
    b"protocol_name=ESMTP\n"
    b"client_address=131.234.189.14\n"
    b"client_name=mail.example.org\n"
    b"helo_name=mail.example.org\n"
    b"sender=a@example.com\n"
    b"recipient=b@example.com\n"
    b"recipient_count=0\n"
    b"queue_id=\n"
    b"instance=123.456.7\n"
    b"size=0\n"
    b"sasl_method=\n"
    b"sasl_username=\n"
    b"\n"
)


def defer_client(request: PolicyRequest) -> Action:
    """REJECT requests without a ``request`` attribute, DEFER the rest with the client IP."""
    if "request" not in request:
        return Action.reject()
    return Action.defer(request.client_address)


@pytest.fixture()
def rcpt_request() -> bytes:
    return RCPT_REQUEST


@pytest.fixture()
def reject_blocked():
    def _callback(request: PolicyRequest) -> Action:
        return Action("REJECT", "5.7.1 blocked")
    return _callback


@pytest.fixture()
def failing_callback():
    def _callback(request: PolicyRequest) -> Action:
        raise RuntimeError("backend down")
    return _callback
