from __future__ import annotations

import json
from typing import Any

import pytest
import requests

from microagent_bsv.gateway import GatewayError, WhatsOnChainClient, format_gateway_hint, network_base_url


def _response(status: int, body: Any) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = body.encode() if isinstance(body, str) else json.dumps(body).encode()
    return response


class StubSession:
    def __init__(self, *responses: Any) -> None:
        self.headers: dict[str, str] = {}
        self.responses = list(responses)
        self.calls: list[tuple[str, str, Any, float]] = []

    def request(self, method, url, json=None, timeout=None):
        self.calls.append((method, url, json, timeout))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(*responses: Any) -> tuple[WhatsOnChainClient, StubSession]:
    session = StubSession(*responses)
    return WhatsOnChainClient("https://example.test/v1/bsv/main/", timeout=7, session=session), session  # type: ignore[arg-type]


def test_network_base_url() -> None:
    assert network_base_url("test") == "https://api.whatsonchain.com/v1/bsv/test"


def test_balance_sums_confirmed_and_unconfirmed() -> None:
    client, session = _client(_response(200, {"confirmed": 1500, "unconfirmed": -200}))

    assert client.get_balance("1Addr") == 1300
    method, url, _, timeout = session.calls[0]
    assert (method, url, timeout) == ("GET", "https://example.test/v1/bsv/main/address/1Addr/balance", 7)
    assert session.headers["User-Agent"].startswith("microagent/")


def test_utxo_listing_maps_fields() -> None:
    client, _ = _client(
        _response(200, [{"tx_hash": "aa" * 32, "tx_pos": 1, "value": 5000, "height": 800000}]),
        _response(200, {"result": [{"tx_hash": "bb" * 32, "tx_pos": 0, "value": 700}]}),
    )

    confirmed = client.list_utxos("1Addr")
    unconfirmed = client.list_unconfirmed_utxos("1Addr")

    assert confirmed[0].txid == "aa" * 32
    assert confirmed[0].output_index == 1
    assert confirmed[0].value_sats == 5000
    assert confirmed[0].height == 800000
    assert unconfirmed[0].value_sats == 700


@pytest.mark.parametrize(
    "entry",
    [{"tx_pos": 0, "value": 700}, {"tx_hash": "aa" * 32, "tx_pos": "x", "value": 700}, "aa"],
)
def test_malformed_utxo_entry_is_a_gateway_error(entry: Any) -> None:
    client, _ = _client(_response(200, [entry]))

    with pytest.raises(GatewayError, match="Malformed UTXO entry"):
        client.list_utxos("1Addr")


def test_raw_transaction_accepts_bare_text() -> None:
    client, _ = _client(_response(200, "0100abcd"))

    assert client.get_raw_transaction("aa" * 32) == "0100abcd"


def test_broadcast_posts_hex_and_returns_txid() -> None:
    client, session = _client(_response(200, '"' + "cc" * 32 + '"'))

    assert client.broadcast("0100") == "cc" * 32
    assert session.calls[0][0] == "POST"
    assert session.calls[0][2] == {"txhex": "0100"}


def test_http_error_carries_status() -> None:
    client, _ = _client(_response(429, "Too Many Requests"))

    with pytest.raises(GatewayError) as excinfo:
        client.get_transaction("aa" * 32)

    assert excinfo.value.status_code == 429
    assert "rate limiting" in (format_gateway_hint(excinfo.value) or "")


def test_transport_failure_becomes_gateway_error() -> None:
    client, _ = _client(requests.ConnectionError("connection refused"))

    with pytest.raises(GatewayError):
        client.get_balance("1Addr")


def test_unexpected_payload_shape_is_rejected() -> None:
    client, _ = _client(_response(200, ["not", "a", "dict"]))

    with pytest.raises(GatewayError):
        client.get_transaction("aa" * 32)


@pytest.mark.parametrize(
    "error, fragment",
    [
        (GatewayError("HTTP 404", status_code=404), "retried next cycle"),
        (GatewayError("HTTP 503", status_code=503), "transient"),
        (GatewayError("Broadcast rejected: Missing inputs"), "already spent"),
        (GatewayError("request timed out"), "timed out"),
    ],
)
def test_gateway_hints(error: GatewayError, fragment: str) -> None:
    assert fragment in (format_gateway_hint(error) or "")


def test_no_hint_for_unknown_errors() -> None:
    assert format_gateway_hint(GatewayError("weird")) is None
    assert format_gateway_hint(None) is None
