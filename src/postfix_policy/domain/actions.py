"""Action verdicts sent back to Postfix.

For the meaning of each verb see ``man 5 access``. The vocabulary is
open: any verb Postfix may learn later can be sent as a plain string.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from postfix_policy.domain.errors import InvalidAction


class ActionVerb(str, Enum):
    OK = "OK"
    DUNNO = "DUNNO"
    REJECT = "REJECT"
    DEFER = "DEFER"
    DEFER_IF_PERMIT = "DEFER_IF_PERMIT"
    DEFER_IF_REJECT = "DEFER_IF_REJECT"
    HOLD = "HOLD"
    DISCARD = "DISCARD"
    FILTER = "FILTER"
    PREPEND = "PREPEND"
    BCC = "BCC"
    REDIRECT = "REDIRECT"
    INFO = "INFO"
    WARN = "WARN"

    @classmethod
    def lookup(cls, verb: str) -> ActionVerb | None:
        """Case-insensitive match against the known verbs."""
        try:
            return cls(verb.upper())
        except ValueError:
            return None


_FORBIDDEN = ("\n", "\r")


def check_verb(verb: str) -> str:
    """Validate a verb and normalize known ones to upper case."""
    if not verb:
        raise InvalidAction("Action verb must not be empty")
    if any(ch.isspace() for ch in verb):
        raise InvalidAction(f"Action verb must not contain whitespace: {verb!r}")
    known = ActionVerb.lookup(verb)
    return known.value if known is not None else verb


def check_argument(argument: str) -> str:
    if any(ch in argument for ch in _FORBIDDEN):
        raise InvalidAction(
            f"Action argument must not contain line breaks: {argument!r}"
        )
    return argument


@dataclass(frozen=True, slots=True)
class Action:
    """A verdict: verb plus optional free-text argument.

    frozen=True so a callback cannot mutate a shared fallback action
    after it has been validated.
    """
    verb: str
    argument: str = ""

    def __post_init__(self) -> None:
        verb = self.verb.value if isinstance(self.verb, ActionVerb) else self.verb
        object.__setattr__(self, "verb", check_verb(verb))
        object.__setattr__(self, "argument", check_argument(self.argument))

    def __str__(self) -> str:
        return f"{self.verb} {self.argument}" if self.argument else self.verb

    @classmethod
    def ok(cls, text: str = "") -> Action:
        return cls(ActionVerb.OK, text)

    @classmethod
    def dunno(cls) -> Action:
        return cls(ActionVerb.DUNNO)

    @classmethod
    def reject(cls, text: str = "") -> Action:
        return cls(ActionVerb.REJECT, text)

    @classmethod
    def defer(cls, text: str = "") -> Action:
        return cls(ActionVerb.DEFER, text)

    @classmethod
    def defer_if_permit(cls, text: str = "") -> Action:
        return cls(ActionVerb.DEFER_IF_PERMIT, text)

    @classmethod
    def defer_if_reject(cls, text: str = "") -> Action:
        return cls(ActionVerb.DEFER_IF_REJECT, text)

    @classmethod
    def hold(cls, text: str = "") -> Action:
        return cls(ActionVerb.HOLD, text)

    @classmethod
    def discard(cls, text: str = "") -> Action:
        return cls(ActionVerb.DISCARD, text)

    @classmethod
    def filter(cls, transport: str) -> Action:
        """Route the message through ``transport:destination``."""
        return cls(ActionVerb.FILTER, transport)

    @classmethod
    def prepend(cls, header: str) -> Action:
        """Prepend ``header`` (``Name: value``) to the message."""
        return cls(ActionVerb.PREPEND, header)

    @classmethod
    def bcc(cls, address: str) -> Action:
        return cls(ActionVerb.BCC, address)

    @classmethod
    def redirect(cls, address: str) -> Action:
        return cls(ActionVerb.REDIRECT, address)

    @classmethod
    def info(cls, text: str) -> Action:
        return cls(ActionVerb.INFO, text)

    @classmethod
    def warn(cls, text: str) -> Action:
        return cls(ActionVerb.WARN, text)
