"""Transaction builder utilities for BSV.

Transactions are assembled and signed locally with the agent's single key;
the indexer is only asked for UTXO listings, previous transaction hex, and
the final broadcast.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Sequence, Set, Tuple

from . import script_codec
from .fees import (
    DEFAULT_FEE_RATE_SAT_PER_BYTE,
    DEFAULT_SAFETY_BUFFER_SATS,
    CoinSelection,
    estimate_fee,
    select_coins,
)
from .gateway import GatewayError
from .keys import AddressError, address_to_script
from .model import Utxo
from .transaction import (
    DEFAULT_SIGHASH,
    Transaction,
    TransactionParseError,
    TxIn,
    TxOut,
    signature_hash,
)
from .wallet import Wallet

logger = logging.getLogger(__name__)


class InsufficientFundsError(RuntimeError):
    """Raised before signing when inputs cannot cover payments plus fee."""

    def __init__(self, have: int, need: int, detail: str | None = None) -> None:
        message = detail or f"Insufficient funds: have {have}, need {need}"
        super().__init__(message)
        self.have = have
        self.need = need


class SignatureContextError(RuntimeError):
    """Raised when a selected input's previous output cannot be resolved."""


@dataclass(frozen=True)
class PaymentOutput:
    address: str
    value_sats: int


@dataclass
class OutputPlan:
    """Outputs requested by the caller, excluding change."""

    data_fields: List[bytes] = field(default_factory=list)
    payments: List[PaymentOutput] = field(default_factory=list)

    @property
    def payment_total(self) -> int:
        return sum(payment.value_sats for payment in self.payments)

    @property
    def payload_size(self) -> int:
        return script_codec.payload_size(self.data_fields)


@dataclass(frozen=True)
class ResolvedInput:
    """A selected UTXO together with the signing context of its prior output."""

    utxo: Utxo
    script: bytes
    value_sats: int


@dataclass
class BuiltTransaction:
    txid: str
    raw_hex: str
    fee_sats: int
    change_sats: int
    input_count: int
    broadcast_result: str | None = None


class UTXOManager:
    """Helper for listing, selecting, and resolving the wallet's UTXOs."""

    def __init__(
        self,
        gateway: Any,
        address: str,
        safety_buffer_sats: int = DEFAULT_SAFETY_BUFFER_SATS,
    ) -> None:
        self.gateway = gateway
        self.address = address
        self.safety_buffer_sats = safety_buffer_sats
        self._spent: Set[Tuple[str, int]] = set()

    def list_spendable(self) -> List[Utxo]:
        """Confirmed UTXOs, or unconfirmed ones when none are confirmed."""

        fresh = self._unspent(self.gateway.list_utxos(self.address))
        if not fresh:
            fresh = self._unspent(self.gateway.list_unconfirmed_utxos(self.address))
        return fresh

    def _unspent(self, utxos: Sequence[Utxo]) -> List[Utxo]:
        fresh = [utxo for utxo in utxos if utxo.outpoint not in self._spent]
        if len(fresh) != len(utxos):
            logger.debug("Ignoring %d UTXOs already spent by this process", len(utxos) - len(fresh))
        return fresh

    def select_utxos(self, target_sats: int) -> CoinSelection:
        utxos = self.list_spendable()
        if not utxos:
            logger.warning("Wallet %s has no spendable UTXOs", self.address)
            raise InsufficientFundsError(0, target_sats, "No UTXOs available; fund the agent address.")
        selection = select_coins(utxos, target_sats, self.safety_buffer_sats)
        logger.debug(
            "Selected %d UTXOs totaling %d sats for target %d",
            len(selection.inputs),
            selection.total_sats,
            target_sats,
        )
        return selection

    def resolve(self, utxos: Sequence[Utxo]) -> List[ResolvedInput]:
        """Fetch each prior output's locking script and value for signing."""

        resolved: List[ResolvedInput] = []
        for utxo in utxos:
            try:
                prev_tx = Transaction.from_hex(self.gateway.get_raw_transaction(utxo.txid))
            except (GatewayError, TransactionParseError) as exc:
                raise SignatureContextError(
                    f"Cannot resolve previous output {utxo.txid}:{utxo.output_index}: {exc}"
                ) from exc
            if prev_tx.txid != utxo.txid:
                raise SignatureContextError(
                    f"Indexer returned transaction {prev_tx.txid} when asked for {utxo.txid}"
                )
            if utxo.output_index >= len(prev_tx.outputs):
                raise SignatureContextError(
                    f"Output {utxo.output_index} does not exist in {utxo.txid}"
                )
            prev_out = prev_tx.outputs[utxo.output_index]
            if prev_out.value != utxo.value_sats:
                logger.warning(
                    "Indexer value %d for %s:%d differs from transaction value %d",
                    utxo.value_sats,
                    utxo.txid,
                    utxo.output_index,
                    prev_out.value,
                )
            utxo.script = prev_out.script_pubkey
            resolved.append(ResolvedInput(utxo=utxo, script=prev_out.script_pubkey, value_sats=prev_out.value))
        return resolved

    def mark_spent(self, utxos: Sequence[Utxo]) -> None:
        self._spent.update(utxo.outpoint for utxo in utxos)


class TransactionBuilder:
    """Assemble and sign P2PKH-spending transactions without broadcasting."""

    def __init__(self, fee_rate: float = DEFAULT_FEE_RATE_SAT_PER_BYTE) -> None:
        self.fee_rate = fee_rate

    def estimate_fee(self, outputs: OutputPlan) -> int:
        # Payments plus the change output; the data carrier is priced by payload.
        return estimate_fee(outputs.payload_size, len(outputs.payments) + 1, self.fee_rate)

    def build(
        self,
        wallet: Wallet,
        inputs: Sequence[ResolvedInput],
        outputs: OutputPlan,
        change_address: str,
    ) -> BuiltTransaction:
        """Create a signed transaction: data carrier, payments, then change.

        Raises :class:`InsufficientFundsError` before any signature is
        computed when the change would be negative.
        """

        for payment in outputs.payments:
            if payment.value_sats <= 0:
                raise ValueError(f"Payment to {payment.address} must be positive")

        total_in = sum(item.value_sats for item in inputs)
        fee = self.estimate_fee(outputs)
        change = total_in - outputs.payment_total - fee
        if not inputs or change < 0:
            logger.warning(
                "Insufficient funds for spend: have=%d payments=%d fee=%d",
                total_in,
                outputs.payment_total,
                fee,
            )
            raise InsufficientFundsError(total_in, outputs.payment_total + fee)

        own_script = address_to_script(wallet.address)
        for item in inputs:
            if item.script != own_script:
                raise SignatureContextError(
                    f"Output {item.utxo.txid}:{item.utxo.output_index} is not locked to {wallet.address}"
                )

        tx = Transaction(
            inputs=[TxIn(prev_txid=item.utxo.txid, prev_index=item.utxo.output_index) for item in inputs]
        )
        if outputs.data_fields:
            tx.outputs.append(TxOut(value=0, script_pubkey=script_codec.encode(outputs.data_fields)))
        try:
            for payment in outputs.payments:
                payment_script = address_to_script(payment.address, wallet.network)
                tx.outputs.append(TxOut(value=payment.value_sats, script_pubkey=payment_script))
            if change > 0:
                tx.outputs.append(TxOut(value=change, script_pubkey=address_to_script(change_address)))
        except AddressError as exc:
            raise ValueError(f"Invalid output address: {exc}") from exc

        for index, item in enumerate(inputs):
            digest = signature_hash(tx, index, item.script, item.value_sats)
            signature = wallet.sign_digest(digest) + bytes([DEFAULT_SIGHASH])
            tx.inputs[index].script_sig = script_codec.push_data(signature) + script_codec.push_data(
                wallet.public_key
            )

        return BuiltTransaction(
            txid=tx.txid,
            raw_hex=tx.to_hex(),
            fee_sats=fee,
            change_sats=change,
            input_count=len(inputs),
        )


class ChainSpender:
    """Select, resolve, build, and broadcast spends from the agent wallet."""

    def __init__(
        self,
        gateway: Any,
        wallet: Wallet,
        builder: TransactionBuilder | None = None,
        safety_buffer_sats: int = DEFAULT_SAFETY_BUFFER_SATS,
    ) -> None:
        self.gateway = gateway
        self.wallet = wallet
        self.builder = builder or TransactionBuilder()
        self.utxo_manager = UTXOManager(gateway, wallet.address, safety_buffer_sats)

    def send(self, outputs: OutputPlan) -> BuiltTransaction:
        selection = self.utxo_manager.select_utxos(outputs.payment_total)
        resolved = self.utxo_manager.resolve(selection.inputs)
        built = self.builder.build(self.wallet, resolved, outputs, self.wallet.address)
        built.broadcast_result = self.gateway.broadcast(built.raw_hex)
        self.utxo_manager.mark_spent(selection.inputs)
        if built.broadcast_result and built.broadcast_result != built.txid:
            logger.warning("Indexer reported txid %s for %s", built.broadcast_result, built.txid)
        logger.info("Broadcasted transaction %s (fee: %d sats)", built.txid, built.fee_sats)
        return built

    def send_message(
        self,
        fields: Sequence[bytes | str],
        recipient: str | None = None,
        amount_sats: int = 0,
    ) -> BuiltTransaction:
        """Broadcast a data-carrier payload, optionally paying ``recipient``."""

        data_fields = [f.encode("utf-8") if isinstance(f, str) else bytes(f) for f in fields]
        payments = [PaymentOutput(recipient, amount_sats)] if recipient and amount_sats > 0 else []
        return self.send(OutputPlan(data_fields=data_fields, payments=payments))

    def send_payment(self, amount_sats: int, destination: str) -> BuiltTransaction:
        """Broadcast a plain transfer with no data carrier."""

        return self.send(OutputPlan(payments=[PaymentOutput(destination, amount_sats)]))
