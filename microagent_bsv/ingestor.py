"""Ingestion of transactions paying the agent address.

Each newly observed transaction moves through
``Discovered -> SenderResolved -> Decoded -> Processed``. Transactions that
carry nothing to answer reach ``Processed`` immediately; conversational
messages are handed to the caller and stay unprocessed until a reply has been
broadcast.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from . import script_codec
from .gateway import GatewayError
from .keys import is_valid_address, pubkey_to_address
from .model import DEFAULT_PROTOCOL_PREFIX, InboundEvent, ProtocolMessage
from .state import AgentState
from .wallet import is_valid_public_key

logger = logging.getLogger(__name__)

Pacer = Callable[[float], None]


@dataclass
class IngestionResult:
    """Outcome of one ingestion pass."""

    events: List[InboundEvent] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def conversational(self) -> List[InboundEvent]:
        return [e for e in self.events if e.message is not None and e.message.is_conversational]


class MessageIngestor:
    """Poll the indexer and turn new transactions into inbound events."""

    def __init__(
        self,
        gateway: Any,
        address: str,
        prefix: str = DEFAULT_PROTOCOL_PREFIX,
        network: str = "main",
        fetch_delay_seconds: float = 1.0,
        pacer: Pacer = time.sleep,
        processed_limit: int = 1000,
        processed_keep: int = 500,
    ) -> None:
        self.gateway = gateway
        self.address = address
        self.prefix = prefix
        self.network = network
        self.fetch_delay_seconds = fetch_delay_seconds
        self.pacer = pacer
        self.processed_limit = processed_limit
        self.processed_keep = processed_keep

    def discover(self, state: AgentState) -> List[str]:
        """Return unprocessed source txids of the address's UTXOs, in order."""

        confirmed = self.gateway.list_utxos(self.address)
        unconfirmed = self.gateway.list_unconfirmed_utxos(self.address)
        seen: Dict[str, None] = {}
        for utxo in [*confirmed, *unconfirmed]:
            seen.setdefault(utxo.txid, None)
        return [txid for txid in seen if not state.is_processed(txid)]

    def poll(self, state: AgentState) -> IngestionResult:
        result = IngestionResult()
        for txid in self.discover(state):
            if self.fetch_delay_seconds > 0:
                self.pacer(self.fetch_delay_seconds)
            try:
                tx = self.gateway.get_transaction(txid)
            except GatewayError as exc:
                logger.warning("TX ERROR %s: %s", txid, exc)
                result.failed.append(txid)
                continue
            try:
                event = self._ingest(txid, tx)
            except Exception:  # pragma: no cover - a bad payload must not stop the cycle
                logger.exception("TX ERROR %s: failed to ingest", txid)
                result.failed.append(txid)
                continue

            if event is None:
                self._mark(state, txid)
                result.skipped.append(txid)
                continue

            result.events.append(event)
            message = event.message
            if message is None:  # pragma: no cover - _ingest only emits messages
                continue
            logger.info(
                'MSG IN: from=%s type=%s data="%s"',
                event.sender,
                message.type,
                message.text,
            )
            if not message.is_conversational:
                # Nothing to answer; finish it now so it is never refetched.
                self._mark(state, txid)
        return result

    def _mark(self, state: AgentState, txid: str) -> None:
        state.mark_processed(txid, self.processed_limit, self.processed_keep)

    def _ingest(self, txid: str, tx: Dict[str, Any]) -> InboundEvent | None:
        sender = self.resolve_sender(tx)
        amount = self.amount_to_address(tx, self.address)
        message = self.extract_message(tx)

        if sender == self.address:
            logger.debug("Skipping self-sent transaction %s", txid)
            return None
        if message is None:
            if amount > 0 and sender:
                logger.info("PAYMENT IN: %d sats from %s", amount, sender)
            return None
        return InboundEvent(
            txid=txid,
            sender=sender,
            amount_sats=amount,
            message=message,
            timestamp=self._timestamp(tx),
        )

    def extract_message(self, tx: Dict[str, Any]) -> ProtocolMessage | None:
        """Return the first output payload carrying this protocol's prefix."""

        for vout in tx.get("vout") or []:
            script_hex = (vout.get("scriptPubKey") or {}).get("hex")
            if not isinstance(script_hex, str) or not script_hex:
                continue
            try:
                script = bytes.fromhex(script_hex)
            except ValueError:
                logger.debug("Non-hex scriptPubKey in output %s", vout.get("n"))
                continue
            message = script_codec.decode_protocol_message(script, self.prefix)
            if message is not None:
                return message
        return None

    def resolve_sender(self, tx: Dict[str, Any]) -> str | None:
        """Sender address from the indexer, or from the first input's public key."""

        vins = tx.get("vin") or []
        if not vins:
            return None
        first = vins[0]
        explicit = first.get("addr") or first.get("address")
        if explicit:
            if is_valid_address(str(explicit), self.network):
                return str(explicit)
            logger.debug("Ignoring non-P2PKH sender address %s", explicit)

        script_sig = first.get("scriptSig") or {}
        pubkey = self._pubkey_from_asm(script_sig.get("asm")) or self._pubkey_from_hex(
            script_sig.get("hex")
        )
        if pubkey is None:
            return None
        return pubkey_to_address(pubkey, self.network)

    @staticmethod
    def _pubkey_from_asm(asm: Any) -> bytes | None:
        if not isinstance(asm, str):
            return None
        tokens = [t for t in asm.split() if not t.startswith("[") and not t.startswith("OP_")]
        if not tokens:
            return None
        try:
            candidate = bytes.fromhex(tokens[-1])
        except ValueError:
            return None
        return candidate if is_valid_public_key(candidate) else None

    @staticmethod
    def _pubkey_from_hex(script_hex: Any) -> bytes | None:
        if not isinstance(script_hex, str) or not script_hex:
            return None
        try:
            pushes = script_codec.read_pushes(bytes.fromhex(script_hex))
        except ValueError:
            return None
        # <signature> <public key>
        if len(pushes) != 2 or not is_valid_public_key(pushes[1]):
            return None
        return pushes[1]

    @staticmethod
    def amount_to_address(tx: Dict[str, Any], address: str) -> int:
        total = 0
        for vout in tx.get("vout") or []:
            script = vout.get("scriptPubKey") or {}
            addresses = script.get("addresses") or []
            if script.get("address"):
                addresses = [*addresses, script["address"]]
            if address in addresses:
                total += round(float(vout.get("value") or 0) * 1e8)
        return total

    @staticmethod
    def _timestamp(tx: Dict[str, Any]) -> datetime:
        raw = tx.get("time") or tx.get("blocktime")
        if raw is None:
            return datetime.now(timezone.utc)
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
