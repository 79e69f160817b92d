from __future__ import annotations

from typing import Any, Dict, List, Sequence

import pytest

from microagent_bsv import script_codec
from microagent_bsv.gateway import GatewayError
from microagent_bsv.keys import NETWORK_VERSIONS, address_to_script, base58_check_encode
from microagent_bsv.model import Utxo
from microagent_bsv.transaction import Transaction, TxIn, TxOut
from microagent_bsv.wallet import Wallet


def _script_address(script: bytes, network: str) -> str | None:
    if len(script) == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return base58_check_encode(script[3:23], NETWORK_VERSIONS[network]["p2pkh"])
    return None


def decoded_view(tx: Transaction, network: str = "main", sender_address: str | None = None) -> Dict[str, Any]:
    """Shape a transaction the way the indexer's /tx/hash endpoint does."""

    vin: List[Dict[str, Any]] = []
    for txin in tx.inputs:
        entry: Dict[str, Any] = {
            "txid": txin.prev_txid,
            "vout": txin.prev_index,
            "scriptSig": {"asm": "", "hex": txin.script_sig.hex()},
        }
        if sender_address:
            entry["addr"] = sender_address
        vin.append(entry)
    vout: List[Dict[str, Any]] = []
    for n, txout in enumerate(tx.outputs):
        script_pubkey: Dict[str, Any] = {"hex": txout.script_pubkey.hex()}
        address = _script_address(txout.script_pubkey, network)
        if address:
            script_pubkey["addresses"] = [address]
        vout.append({"n": n, "value": txout.value / 1e8, "scriptPubKey": script_pubkey})
    return {"txid": tx.txid, "vin": vin, "vout": vout, "time": 1700000000}


class StubGateway:
    """In-memory indexer backed by real serialized transactions."""

    def __init__(self, network: str = "main") -> None:
        self.network = network
        self.balance: int | None = None
        self.confirmed: List[Utxo] = []
        self.unconfirmed: List[Utxo] = []
        self.decoded: Dict[str, Dict[str, Any]] = {}
        self.raw: Dict[str, str] = {}
        self.broadcasts: List[Transaction] = []
        self.broadcast_failures = 0
        self.broadcast_attempts = 0
        self.failing_attempts: set[int] = set()
        self.failing_txids: set[str] = set()
        self.transaction_fetches: List[str] = []
        self._counter = 0

    def _store(self, tx: Transaction, sender_address: str | None = None) -> None:
        self.raw[tx.txid] = tx.to_hex()
        self.decoded[tx.txid] = decoded_view(tx, self.network, sender_address)

    def _next_prevout(self) -> str:
        self._counter += 1
        return f"{self._counter:064x}"

    def fund(self, address: str, value_sats: int, confirmed: bool = True) -> Utxo:
        tx = Transaction(
            inputs=[TxIn(prev_txid=self._next_prevout(), prev_index=0)],
            outputs=[TxOut(value=value_sats, script_pubkey=address_to_script(address))],
        )
        self._store(tx)
        utxo = Utxo(txid=tx.txid, output_index=0, value_sats=value_sats)
        (self.confirmed if confirmed else self.unconfirmed).append(utxo)
        return utxo

    def deliver(
        self,
        sender: Wallet,
        recipient: str,
        fields: Sequence[bytes | str],
        amount_sats: int = 1000,
        explicit_sender: bool = False,
    ) -> str:
        """Add an unconfirmed message transaction from ``sender`` to ``recipient``."""

        script_sig = script_codec.push_data(b"\x30" * 71) + script_codec.push_data(sender.public_key)
        tx = Transaction(
            inputs=[TxIn(prev_txid=self._next_prevout(), prev_index=0, script_sig=script_sig)],
            outputs=[
                TxOut(value=0, script_pubkey=script_codec.encode(fields)),
                TxOut(value=amount_sats, script_pubkey=address_to_script(recipient)),
            ],
        )
        self._store(tx, sender.address if explicit_sender else None)
        self.unconfirmed.append(Utxo(txid=tx.txid, output_index=1, value_sats=amount_sats))
        return tx.txid

    # ChainGateway surface ------------------------------------------------

    def get_balance(self, address: str) -> int:
        if self.balance is not None:
            return self.balance
        return sum(utxo.value_sats for utxo in [*self.confirmed, *self.unconfirmed])

    def list_utxos(self, address: str) -> List[Utxo]:
        return list(self.confirmed)

    def list_unconfirmed_utxos(self, address: str) -> List[Utxo]:
        return list(self.unconfirmed)

    def get_transaction(self, txid: str) -> Dict[str, Any]:
        self.transaction_fetches.append(txid)
        if txid in self.failing_txids or txid not in self.decoded:
            raise GatewayError(f"HTTP 404 from /tx/hash/{txid}", status_code=404)
        return self.decoded[txid]

    def get_raw_transaction(self, txid: str) -> str:
        if txid not in self.raw:
            raise GatewayError(f"HTTP 404 from /tx/{txid}/hex", status_code=404)
        return self.raw[txid]

    def broadcast(self, raw_hex: str) -> str:
        self.broadcast_attempts += 1
        if self.broadcast_attempts in self.failing_attempts:
            raise GatewayError("HTTP 500 from /tx/raw: node unavailable", status_code=500)
        if self.broadcast_failures > 0:
            self.broadcast_failures -= 1
            raise GatewayError("HTTP 500 from /tx/raw: node unavailable", status_code=500)
        tx = Transaction.from_hex(raw_hex)
        self.broadcasts.append(tx)
        return tx.txid


@pytest.fixture
def agent_wallet() -> Wallet:
    return Wallet.from_secret(1)


@pytest.fixture
def sender_wallet() -> Wallet:
    return Wallet.from_secret(2)


@pytest.fixture
def third_party_address() -> str:
    return Wallet.from_secret(3).address


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()
