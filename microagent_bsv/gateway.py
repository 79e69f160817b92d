"""REST client for the WhatsOnChain BSV indexer.

The agent trusts the indexer for balances, UTXO listings, decoded
transactions, and raw transaction hex; no header or proof validation is done
here. Every request carries a fixed timeout and every failure surfaces as a
:class:`GatewayError` so callers can isolate it to a single item.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import requests
from requests import RequestException, Response

from .model import Utxo

logger = logging.getLogger(__name__)

WOC_BASE_URL = "https://api.whatsonchain.com/v1/bsv"
DEFAULT_TIMEOUT_SECONDS = 15.0
USER_AGENT = "microagent/1.0"


class GatewayError(RuntimeError):
    """Raised when the indexer is unreachable or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def format_gateway_hint(error: GatewayError | None) -> str | None:
    """Return a short remediation hint for common indexer failures."""

    if error is None:
        return None
    message = str(error).lower()
    if error.status_code == 429:
        return "The indexer is rate limiting requests; raise fetch_delay_seconds or loop_interval_seconds."
    if error.status_code == 404:
        return "The indexer does not know this transaction or address yet; it will be retried next cycle."
    if error.status_code is not None and error.status_code >= 500:
        return "The indexer reported a server error; this is usually transient."
    if "missing inputs" in message or "txn-mempool-conflict" in message:
        return (
            "The broadcast spent outputs that are already spent; the indexer's UTXO list "
            "was stale. Wait for it to catch up."
        )
    if "timed out" in message or "timeout" in message:
        return "The request timed out; check connectivity or raise http_timeout_seconds."
    return None


def network_base_url(network: str) -> str:
    return f"{WOC_BASE_URL}/{network}"


def _utxo_from_entry(entry: Any) -> Utxo:
    try:
        return Utxo(
            txid=str(entry["tx_hash"]),
            output_index=int(entry["tx_pos"]),
            value_sats=int(entry["value"]),
            height=entry.get("height"),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise GatewayError(f"Malformed UTXO entry from indexer: {entry!r}") from exc


class WhatsOnChainClient:
    """Thin JSON client; each helper maps to one indexer endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)

    @classmethod
    def for_network(cls, network: str = "main", timeout: float = DEFAULT_TIMEOUT_SECONDS) -> "WhatsOnChainClient":
        return cls(network_base_url(network), timeout=timeout)

    def _request(self, method: str, path: str, json_body: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug("Gateway %s %s", method, path)
        try:
            response = self._session.request(method, url, json=json_body, timeout=self.timeout)
        except RequestException as exc:
            logger.error(
                "Gateway connection failed: %s",
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise GatewayError(f"Gateway request {method} {path} failed: {exc}") from exc
        self._raise_for_status(response, path)
        return self._parse_body(response)

    def _raise_for_status(self, response: Response, path: str) -> None:
        if response.ok:
            return
        body = (response.text or "")[:200]
        logger.warning("Gateway HTTP %s from %s: %s", response.status_code, path, body)
        raise GatewayError(
            f"HTTP {response.status_code} from {path}: {body}",
            status_code=response.status_code,
        )

    @staticmethod
    def _parse_body(response: Response) -> Any:
        try:
            return response.json()
        except ValueError:
            # Some endpoints (raw hex, broadcast) answer with bare text.
            return response.text.strip().strip('"')

    # Convenience wrappers -------------------------------------------------

    def get_balance(self, address: str) -> int:
        data = self._request("GET", f"/address/{address}/balance")
        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected balance payload for {address}")
        return int(data.get("confirmed") or 0) + int(data.get("unconfirmed") or 0)

    def list_utxos(self, address: str) -> List[Utxo]:
        data = self._request("GET", f"/address/{address}/unspent")
        if not data:
            return []
        if not isinstance(data, list):
            raise GatewayError(f"Unexpected UTXO payload for {address}")
        return [_utxo_from_entry(entry) for entry in data]

    def list_unconfirmed_utxos(self, address: str) -> List[Utxo]:
        data = self._request("GET", f"/address/{address}/unconfirmed/unspent")
        entries = data.get("result") if isinstance(data, dict) else data
        return [_utxo_from_entry(entry) for entry in entries or []]

    def get_transaction(self, txid: str) -> Dict[str, Any]:
        data = self._request("GET", f"/tx/hash/{txid}")
        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected transaction payload for {txid}")
        return data

    def get_raw_transaction(self, txid: str) -> str:
        data = self._request("GET", f"/tx/{txid}/hex")
        if isinstance(data, dict):
            data = data.get("hex")
        if not isinstance(data, str) or not data:
            raise GatewayError(f"No raw hex returned for {txid}")
        return data

    def broadcast(self, raw_hex: str) -> str:
        data = self._request("POST", "/tx/raw", json_body={"txhex": raw_hex})
        if isinstance(data, dict):
            if data.get("error"):
                raise GatewayError(f"Broadcast rejected: {data['error']}")
            data = data.get("txid") or data.get("result")
        return str(data)
