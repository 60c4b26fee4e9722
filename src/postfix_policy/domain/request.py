"""PolicyRequest: one decoded attribute block.

A read-only, insertion-ordered mapping of attribute name -> value.
Duplicate names are tolerated: the last occurrence wins and the name
is recorded in ``duplicates`` so callers can reject such requests if
they care.

Attribute reference: http://www.postfix.org/SMTPD_POLICY_README.html
"""
from __future__ import annotations

from collections.abc import Iterator, Mapping

from postfix_policy.domain.types import AttributeName, AttributeValue


class PolicyRequest(Mapping[AttributeName, AttributeValue]):
    """Decoded policy query. Created fresh for every block."""

    __slots__ = ("_attributes", "_duplicates")

    def __init__(
        self,
        attributes: Mapping[AttributeName, AttributeValue] | None = None,
        duplicates: frozenset[AttributeName] = frozenset(),
    ) -> None:
        self._attributes: dict[AttributeName, AttributeValue] = dict(attributes or {})
        self._duplicates = frozenset(duplicates)

    def __getitem__(self, name: AttributeName) -> AttributeValue:
        return self._attributes[name]

    def __iter__(self) -> Iterator[AttributeName]:
        return iter(self._attributes)

    def __len__(self) -> int:
        return len(self._attributes)

    def __repr__(self) -> str:
        return f"PolicyRequest({self._attributes!r})"

    @property
    def duplicates(self) -> frozenset[AttributeName]:
        """Names that appeared more than once in the block."""
        return self._duplicates

    def _text(self, name: str) -> str:
        return self._attributes.get(name, "")

    # Convenience accessors for the attributes every policy looks at.
    # Missing attributes read as "" (Postfix sends empty values the same way).

    @property
    def request(self) -> str:
        return self._text("request")

    @property
    def protocol_state(self) -> str:
        return self._text("protocol_state")

    @property
    def protocol_name(self) -> str:
        return self._text("protocol_name")

    @property
    def sender(self) -> str:
        return self._text("sender")

    @property
    def recipient(self) -> str:
        return self._text("recipient")

    @property
    def client_address(self) -> str:
        return self._text("client_address")

    @property
    def client_name(self) -> str:
        return self._text("client_name")

    @property
    def helo_name(self) -> str:
        return self._text("helo_name")

    @property
    def queue_id(self) -> str:
        return self._text("queue_id")

    @property
    def instance(self) -> str:
        return self._text("instance")

    @property
    def sasl_username(self) -> str:
        return self._text("sasl_username")
