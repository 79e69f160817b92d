"""Domain models for the MicroAgent on-chain messaging protocol.

The structures defined here describe what flows between the ingestion,
reasoning, and reply stages of a single agent cycle. Only :class:`AgentState`
(see :mod:`microagent_bsv.state`) outlives a cycle; everything here is either
immutable or rebuilt from the ledger each time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence, Tuple

DEFAULT_PROTOCOL_PREFIX = "MA1"
MSG_TYPE = "msg"
REPLY_TYPE = "reply"
CONVERSATIONAL_TYPES = frozenset({MSG_TYPE, REPLY_TYPE})

ROLE_THEM = "them"
ROLE_ME = "me"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


@dataclass
class Utxo:
    """Spendable output as reported by the indexer for one selection pass."""

    txid: str
    output_index: int
    value_sats: int
    height: int | None = None
    script: bytes | None = None

    @property
    def outpoint(self) -> Tuple[str, int]:
        return self.txid, self.output_index


@dataclass(frozen=True)
class ProtocolMessage:
    """Decoded ``[prefix, type, *fields]`` payload."""

    prefix: str
    type: str
    fields: Tuple[bytes, ...] = ()

    def __post_init__(self) -> None:
        if not self.prefix:
            raise ValueError("ProtocolMessage requires a protocol prefix")
        if not self.type:
            raise ValueError("ProtocolMessage requires a message type")
        object.__setattr__(self, "fields", tuple(bytes(f) for f in self.fields))

    @classmethod
    def from_fields(cls, fields: Sequence[bytes], prefix: str) -> "ProtocolMessage | None":
        """Return a message when ``fields`` start with exactly ``prefix``.

        The comparison is a byte-for-byte match; a payload that carries no
        type field after the prefix is not a message.
        """

        if len(fields) < 2 or fields[0] != prefix.encode("utf-8"):
            return None
        msg_type = _text(fields[1])
        if not msg_type:
            return None
        return cls(prefix=prefix, type=msg_type, fields=tuple(fields[2:]))

    @classmethod
    def msg(cls, text: str, prefix: str = DEFAULT_PROTOCOL_PREFIX) -> "ProtocolMessage":
        return cls(prefix=prefix, type=MSG_TYPE, fields=(text.encode("utf-8"),))

    @classmethod
    def reply(
        cls, original_txid: str, text: str, prefix: str = DEFAULT_PROTOCOL_PREFIX
    ) -> "ProtocolMessage":
        return cls(
            prefix=prefix,
            type=REPLY_TYPE,
            fields=(original_txid.encode("utf-8"), text.encode("utf-8")),
        )

    @property
    def is_conversational(self) -> bool:
        return self.type in CONVERSATIONAL_TYPES

    @property
    def in_reply_to(self) -> str | None:
        if self.type != REPLY_TYPE or not self.fields:
            return None
        return _text(self.fields[0])

    @property
    def text(self) -> str:
        """Human-readable body with multiple text fields joined by spaces."""

        body = self.fields[1:] if self.type == REPLY_TYPE else self.fields
        return " ".join(_text(part) for part in body)

    def to_fields(self) -> list[bytes]:
        return [self.prefix.encode("utf-8"), self.type.encode("utf-8"), *self.fields]


@dataclass
class InboundEvent:
    """A protocol message observed in a transaction paying the agent."""

    txid: str
    sender: str | None
    amount_sats: int
    message: ProtocolMessage | None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "txid": self.txid,
            "sender": self.sender,
            "amount_sats": self.amount_sats,
            "time": self.timestamp.isoformat(),
        }
        if self.message is not None:
            data["type"] = self.message.type
            data["data"] = [_text(part) for part in self.message.fields]
        return data


@dataclass
class ConversationTurn:
    role: str
    text: str
    timestamp: datetime = field(default_factory=utcnow)
    txid: str | None = None

    def __post_init__(self) -> None:
        if self.role not in (ROLE_THEM, ROLE_ME):
            raise ValueError(f"Unknown conversation role: {self.role!r}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": self.role,
            "text": self.text,
            "time": self.timestamp.isoformat(),
        }
        if self.txid is not None:
            data["txid"] = self.txid
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConversationTurn":
        raw_time = payload.get("time")
        timestamp = datetime.fromisoformat(raw_time) if isinstance(raw_time, str) else utcnow()
        return cls(
            role=str(payload["role"]),
            text=str(payload.get("text", "")),
            timestamp=timestamp,
            txid=payload.get("txid"),
        )


@dataclass(frozen=True)
class SkillAction:
    """A capability invocation recognized in model output."""

    kind: str
    parameters: Mapping[str, Any]
    raw_text: str

    def __post_init__(self) -> None:
        if not self.kind:
            raise ValueError("SkillAction requires a kind")
        if not self.raw_text:
            raise ValueError("SkillAction requires the matched raw text")
