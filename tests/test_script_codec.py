from __future__ import annotations

import pytest

from microagent_bsv import script_codec
from microagent_bsv.script_codec import ScriptDecodeError, ScriptEncodeError, push_data


def test_push_data_small_literal() -> None:
    data = b"x" * 10

    assert push_data(data) == b"\x0a" + data


def test_push_data_direct_limit() -> None:
    data = b"x" * 75

    assert push_data(data) == b"\x4b" + data


def test_push_data_op_pushdata1() -> None:
    data = b"x" * 100

    encoded = push_data(data)

    assert encoded.startswith(b"\x4c\x64")
    assert len(encoded) == 2 + len(data)


def test_push_data_op_pushdata2() -> None:
    data = b"x" * 300

    encoded = push_data(data)

    assert encoded.startswith(b"\x4d")
    assert encoded[1:3] == len(data).to_bytes(2, "little")
    assert len(encoded) == 1 + 2 + len(data)


def test_push_data_boundaries_between_forms() -> None:
    assert push_data(b"x" * 76)[:2] == b"\x4c\x4c"
    assert push_data(b"x" * 255)[:2] == b"\x4c\xff"
    assert push_data(b"x" * 256)[:3] == b"\x4d\x00\x01"
    assert push_data(b"x" * 65535)[:3] == b"\x4d\xff\xff"


def test_push_data_too_large() -> None:
    with pytest.raises(ScriptEncodeError):
        push_data(b"x" * 65536)


def test_encode_message_fields() -> None:
    script = script_codec.encode(["MA1", "msg", "hello"])

    assert script == bytes.fromhex("006a") + b"\x03MA1\x03msg\x05hello"
    assert script_codec.decode(script) == [b"MA1", b"msg", b"hello"]


def test_decode_preserves_mixed_sizes_and_empty_fields() -> None:
    fields = [b"MA1", b"", b"a" * 80, b"b" * 300, bytes(range(256))]

    assert script_codec.decode(script_codec.encode(fields)) == fields


def test_decode_accepts_bare_op_return() -> None:
    assert script_codec.decode(b"\x6a\x03MA1\x03msg") == [b"MA1", b"msg"]


def test_decode_rejects_non_data_scripts() -> None:
    p2pkh = bytes.fromhex("76a914" + "00" * 20 + "88ac")

    assert script_codec.decode(p2pkh) is None
    assert script_codec.decode(b"") is None
    assert script_codec.decode(b"\x00") is None


@pytest.mark.parametrize(
    "script",
    [
        b"\x00\x6a\x05abc",
        b"\x00\x6a\x4c",
        b"\x00\x6a\x4c\x10abc",
        b"\x00\x6a\x4d\x01",
        b"\x00\x6a\x4d\x00\x01abc",
        b"\x00\x6a\x03MA1\x76",
    ],
)
def test_decode_returns_none_for_malformed_payload(script: bytes) -> None:
    assert script_codec.decode(script) is None


def test_read_pushes_raises_on_truncation() -> None:
    with pytest.raises(ScriptDecodeError):
        script_codec.read_pushes(b"\x05abc")


def test_protocol_message_requires_exact_prefix() -> None:
    script = script_codec.encode(["MA1", "msg", "hello"])
    message = script_codec.decode_protocol_message(script, "MA1")

    assert message is not None
    assert message.type == "msg"
    assert message.text == "hello"
    assert script_codec.decode_protocol_message(script, "ma1") is None
    assert script_codec.decode_protocol_message(script, "MA") is None


def test_foreign_prefix_is_not_a_message() -> None:
    script = script_codec.encode(["XX1", "msg", "hello"])

    assert script_codec.decode(script) == [b"XX1", b"msg", b"hello"]
    assert script_codec.decode_protocol_message(script, "MA1") is None


def test_prefix_without_type_is_not_a_message() -> None:
    assert script_codec.decode_protocol_message(script_codec.encode(["MA1"]), "MA1") is None


def test_payload_size_counts_field_bytes() -> None:
    assert script_codec.payload_size(["MA1", "msg", b"\x00\x01"]) == 8
