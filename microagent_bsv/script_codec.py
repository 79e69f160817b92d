"""Push-data codec for MicroAgent data-carrier outputs.

Payloads ride in an ``OP_FALSE OP_RETURN`` output as a sequence of push-data
fields. The first field is the protocol prefix, the second the message type,
and the remainder the type-specific fields.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

from .model import ProtocolMessage

logger = logging.getLogger(__name__)

OP_FALSE = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_RETURN = 0x6A

MAX_DIRECT_PUSH = 0x4B
MAX_FIELD_BYTES = 0xFFFF


class ScriptEncodeError(ValueError):
    """Raised when a field cannot be pushed into a data-carrier script."""


class ScriptDecodeError(ValueError):
    """Raised when script bytes are not a well-formed sequence of pushes."""


def push_data(data: bytes) -> bytes:
    """Return the minimal push encoding for ``data``."""

    length = len(data)
    if length == 0:
        return bytes([OP_FALSE])
    if length <= MAX_DIRECT_PUSH:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= MAX_FIELD_BYTES:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    raise ScriptEncodeError(
        f"Field of {length} bytes exceeds the {MAX_FIELD_BYTES}-byte push limit"
    )


def _as_bytes(field: bytes | str) -> bytes:
    if isinstance(field, str):
        return field.encode("utf-8")
    return bytes(field)


def encode(fields: Iterable[bytes | str]) -> bytes:
    """Build an ``OP_FALSE OP_RETURN <push>...`` script from ``fields``."""

    script = bytearray([OP_FALSE, OP_RETURN])
    for field in fields:
        script += push_data(_as_bytes(field))
    return bytes(script)


def read_pushes(script: bytes, offset: int = 0) -> List[bytes]:
    """Read consecutive push-data fields starting at ``offset``.

    Raises :class:`ScriptDecodeError` when a length header points past the end
    of the script or a non-push opcode is encountered.
    """

    fields: List[bytes] = []
    i = offset
    end = len(script)
    while i < end:
        opcode = script[i]
        i += 1
        if opcode == OP_FALSE:
            fields.append(b"")
            continue
        if opcode <= MAX_DIRECT_PUSH:
            length = opcode
        elif opcode == OP_PUSHDATA1:
            if i + 1 > end:
                raise ScriptDecodeError("Truncated OP_PUSHDATA1 length")
            length = script[i]
            i += 1
        elif opcode == OP_PUSHDATA2:
            if i + 2 > end:
                raise ScriptDecodeError("Truncated OP_PUSHDATA2 length")
            length = int.from_bytes(script[i : i + 2], "little")
            i += 2
        else:
            raise ScriptDecodeError(f"Unsupported opcode 0x{opcode:02x} in data payload")
        if i + length > end:
            raise ScriptDecodeError(
                f"Push of {length} bytes runs past end of script at offset {i}"
            )
        fields.append(bytes(script[i : i + length]))
        i += length
    return fields


def decode(script: bytes) -> List[bytes] | None:
    """Return the pushed fields of a data-carrier script, or ``None``.

    An optional leading ``OP_FALSE`` is skipped before ``OP_RETURN``. Scripts
    that are not data carriers or whose pushes are malformed yield ``None`` so
    callers can move on to the next output.
    """

    i = 0
    if len(script) > 1 and script[0] == OP_FALSE:
        i = 1
    if i >= len(script) or script[i] != OP_RETURN:
        return None
    try:
        return read_pushes(script, i + 1)
    except ScriptDecodeError as exc:
        logger.debug("Skipping malformed data-carrier script: %s", exc)
        return None


def decode_protocol_message(script: bytes, prefix: str) -> ProtocolMessage | None:
    """Decode ``script`` into a :class:`ProtocolMessage` if it carries ``prefix``."""

    fields = decode(script)
    if fields is None:
        return None
    return ProtocolMessage.from_fields(fields, prefix)


def payload_size(fields: Sequence[bytes | str]) -> int:
    """Total byte length of ``fields`` as used by the fee model."""

    return sum(len(_as_bytes(field)) for field in fields)
