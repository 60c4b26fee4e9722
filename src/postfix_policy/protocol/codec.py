"""Attribute codec for the Postfix policy delegation protocol.

Request lines:
    name=value\\n            (value may carry %XX escapes)

Response:
    action=VERB[ argument]\\n\\n

Everything here is a pure function of its arguments, no I/O, so the
escape table can be tested against arbitrary byte strings without a
socket in sight.
"""
from __future__ import annotations

from collections.abc import Mapping

from postfix_policy.domain.actions import Action, check_argument, check_verb
from postfix_policy.domain.errors import InvalidEscape, MalformedLine

ENCODING = "utf-8"
ERRORS = "surrogateescape"  # undecodable bytes survive decode -> encode

ACTION_PREFIX = b"action="
TERMINATOR = b"\n\n"

_HEX = frozenset(b"0123456789abcdefABCDEF")
_PERCENT = 0x25


def _must_escape(byte: int) -> bool:
    return byte < 0x20 or byte >= 0x7F or byte in (0x25, 0x3D)  # % and =


# byte -> its wire form, built once
_ESCAPE_TABLE: tuple[bytes, ...] = tuple(
    (b"%%%02X" % b) if _must_escape(b) else bytes((b,)) for b in range(256)
)


def escape_bytes(raw: bytes) -> bytes:
    """Percent-encode control bytes, %, =, DEL and everything >= 0x80."""
    return b"".join(_ESCAPE_TABLE[b] for b in raw)


def unescape_bytes(raw: bytes) -> bytes:
    """Decode %XX sequences. A % without two hex digits is InvalidEscape."""
    if _PERCENT not in raw:
        return raw
    out = bytearray()
    i = 0
    n = len(raw)
    while i < n:
        b = raw[i]
        if b != _PERCENT:
            out.append(b)
            i += 1
            continue
        if i + 2 >= n:
            raise InvalidEscape(raw, i)
        hi, lo = raw[i + 1], raw[i + 2]
        if hi not in _HEX or lo not in _HEX:
            raise InvalidEscape(raw, i)
        out.append(int(raw[i + 1:i + 3], 16))
        i += 3
    return bytes(out)


def escape(value: str) -> str:
    """Text-level escape(). Output is pure ASCII."""
    return escape_bytes(value.encode(ENCODING, ERRORS)).decode("ascii")


def unescape(value: str) -> str:
    """Text-level unescape(); ``unescape(escape(v)) == v`` for any v escape() accepts.

    escape() raises UnicodeEncodeError on lone surrogates outside the
    surrogateescape range U+DC80..U+DCFF, e.g. ``"\\ud800"``.
    """
    raw = unescape_bytes(value.encode(ENCODING, ERRORS))
    return raw.decode(ENCODING, ERRORS)


def decode_attribute_line(line: bytes) -> tuple[str, str]:
    """Split ``name=value`` (no trailing newline) and unescape the value.

    Raises:
        MalformedLine: no '=' present, or the name is empty
        InvalidEscape: bad %-sequence in the value
    """
    name, sep, value = line.partition(b"=")
    if not sep:
        raise MalformedLine(line)
    if not name:
        raise MalformedLine(line, "empty attribute name")
    return (
        name.decode(ENCODING, ERRORS),
        unescape_bytes(value).decode(ENCODING, ERRORS),
    )


def encode_attribute_line(name: str, value: str) -> bytes:
    """Inverse of decode_attribute_line, newline included. Used by clients."""
    return (
        name.encode(ENCODING, ERRORS)
        + b"="
        + escape_bytes(value.encode(ENCODING, ERRORS))
        + b"\n"
    )


def encode_request(attributes: Mapping[str, str]) -> bytes:
    """Serialize a whole attribute block, blank-line terminator included."""
    return b"".join(
        encode_attribute_line(k, v) for k, v in attributes.items()
    ) + b"\n"


def encode_action(action: Action) -> bytes:
    """Serialize a verdict to ``action=VERB[ argument]\\n\\n``.

    The argument is not %-escaped. Line breaks are rejected
    (InvalidAction) because a stray newline would end the response
    early and desync the peer.
    """
    verb = check_verb(action.verb)
    argument = check_argument(action.argument)
    line = f"{verb} {argument}" if argument else verb
    return ACTION_PREFIX + line.encode(ENCODING, ERRORS) + TERMINATOR
