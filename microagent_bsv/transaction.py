"""Minimal BSV transaction serialization and signature digests.

Covers exactly what a P2PKH spender needs: legacy (non-segwit) wire
serialization, parsing previous transactions to recover an output's locking
script and value, and the replay-protected ``SIGHASH_FORKID`` digest.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

from .keys import double_sha256

SIGHASH_ALL = 0x01
SIGHASH_FORKID = 0x40
DEFAULT_SIGHASH = SIGHASH_ALL | SIGHASH_FORKID
DEFAULT_SEQUENCE = 0xFFFFFFFF


class TransactionParseError(ValueError):
    """Raised when raw transaction bytes cannot be parsed."""


def ser_compact_size(n: int) -> bytes:
    """Serialize an integer as a compact size."""
    if n < 253:
        return bytes([n])
    elif n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    elif n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    else:
        return b"\xff" + n.to_bytes(8, "little")


def read_compact_size(data: bytes, offset: int) -> Tuple[int, int]:
    """Return ``(value, new_offset)`` for a compact size at ``offset``."""
    if offset >= len(data):
        raise TransactionParseError("Truncated compact size")
    first = data[offset]
    width = {0xFD: 2, 0xFE: 4, 0xFF: 8}.get(first)
    if width is None:
        return first, offset + 1
    end = offset + 1 + width
    if end > len(data):
        raise TransactionParseError("Truncated compact size")
    return int.from_bytes(data[offset + 1 : end], "little"), end


@dataclass
class TxIn:
    prev_txid: str
    prev_index: int
    script_sig: bytes = b""
    sequence: int = DEFAULT_SEQUENCE

    def outpoint(self) -> bytes:
        return bytes.fromhex(self.prev_txid)[::-1] + self.prev_index.to_bytes(4, "little")

    def serialize(self) -> bytes:
        return (
            self.outpoint()
            + ser_compact_size(len(self.script_sig))
            + self.script_sig
            + self.sequence.to_bytes(4, "little")
        )


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (
            self.value.to_bytes(8, "little")
            + ser_compact_size(len(self.script_pubkey))
            + self.script_pubkey
        )


@dataclass
class Transaction:
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    version: int = 1
    locktime: int = 0

    def serialize(self) -> bytes:
        parts = [self.version.to_bytes(4, "little"), ser_compact_size(len(self.inputs))]
        parts.extend(txin.serialize() for txin in self.inputs)
        parts.append(ser_compact_size(len(self.outputs)))
        parts.extend(txout.serialize() for txout in self.outputs)
        parts.append(self.locktime.to_bytes(4, "little"))
        return b"".join(parts)

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return double_sha256(self.serialize())[::-1].hex()

    @classmethod
    def from_hex(cls, raw_hex: str) -> "Transaction":
        try:
            raw = bytes.fromhex(raw_hex.strip())
        except ValueError as exc:
            raise TransactionParseError("Raw transaction is not valid hex") from exc
        return cls.from_bytes(raw)

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Transaction":
        def take(offset: int, size: int) -> Tuple[bytes, int]:
            end = offset + size
            if end > len(raw):
                raise TransactionParseError("Truncated transaction")
            return raw[offset:end], end

        chunk, pos = take(0, 4)
        tx = cls(version=int.from_bytes(chunk, "little"))

        count, pos = read_compact_size(raw, pos)
        for _ in range(count):
            prev_hash, pos = take(pos, 32)
            index, pos = take(pos, 4)
            script_len, pos = read_compact_size(raw, pos)
            script, pos = take(pos, script_len)
            sequence, pos = take(pos, 4)
            tx.inputs.append(
                TxIn(
                    prev_txid=prev_hash[::-1].hex(),
                    prev_index=int.from_bytes(index, "little"),
                    script_sig=script,
                    sequence=int.from_bytes(sequence, "little"),
                )
            )

        count, pos = read_compact_size(raw, pos)
        for _ in range(count):
            value, pos = take(pos, 8)
            script_len, pos = read_compact_size(raw, pos)
            script, pos = take(pos, script_len)
            tx.outputs.append(TxOut(value=int.from_bytes(value, "little"), script_pubkey=script))

        locktime, pos = take(pos, 4)
        tx.locktime = int.from_bytes(locktime, "little")
        if pos != len(raw):
            raise TransactionParseError(f"{len(raw) - pos} trailing bytes after transaction")
        return tx


def signature_hash(
    tx: Transaction,
    index: int,
    prev_script: bytes,
    prev_value: int,
    sighash_type: int = DEFAULT_SIGHASH,
) -> bytes:
    """Compute the FORKID (BIP143-style) digest signed for input ``index``.

    Only ``SIGHASH_ALL | SIGHASH_FORKID`` is produced by this package.
    """

    if sighash_type != DEFAULT_SIGHASH:
        raise ValueError(f"Unsupported sighash type 0x{sighash_type:02x}")
    txin = tx.inputs[index]
    hash_prevouts = double_sha256(b"".join(i.outpoint() for i in tx.inputs))
    hash_sequence = double_sha256(b"".join(i.sequence.to_bytes(4, "little") for i in tx.inputs))
    hash_outputs = double_sha256(b"".join(o.serialize() for o in tx.outputs))
    preimage = b"".join(
        [
            tx.version.to_bytes(4, "little"),
            hash_prevouts,
            hash_sequence,
            txin.outpoint(),
            ser_compact_size(len(prev_script)),
            prev_script,
            prev_value.to_bytes(8, "little"),
            txin.sequence.to_bytes(4, "little"),
            hash_outputs,
            tx.locktime.to_bytes(4, "little"),
            sighash_type.to_bytes(4, "little"),
        ]
    )
    return double_sha256(preimage)
