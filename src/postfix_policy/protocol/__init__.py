"""Wire protocol: attribute codec plus blocking and async request assemblers.

The codec and RequestParser do no I/O. RequestAssembler and
AsyncRequestAssembler feed them from a socket-like transport or an
asyncio stream respectively; both speak the same framing.
"""
from postfix_policy.protocol.assembler import RequestAssembler, write_action
from postfix_policy.protocol.async_assembler import (
    AsyncRequestAssembler,
    async_write_action,
)
from postfix_policy.protocol.codec import (
    decode_attribute_line,
    encode_action,
    encode_attribute_line,
    encode_request,
    escape,
    escape_bytes,
    unescape,
    unescape_bytes,
)
from postfix_policy.protocol.parser import (
    DEFAULT_LIMITS,
    MAX_ATTRIBUTES,
    MAX_REQUEST_SIZE,
    ProtocolLimits,
    RequestParser,
)

__all__ = [
    "RequestAssembler",
    "write_action",
    "AsyncRequestAssembler",
    "async_write_action",
    "decode_attribute_line",
    "encode_action",
    "encode_attribute_line",
    "encode_request",
    "escape",
    "escape_bytes",
    "unescape",
    "unescape_bytes",
    "DEFAULT_LIMITS",
    "MAX_ATTRIBUTES",
    "MAX_REQUEST_SIZE",
    "ProtocolLimits",
    "RequestParser",
]
