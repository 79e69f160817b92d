from __future__ import annotations

import json
from typing import Any

import pytest
import requests

from microagent_bsv.llm import CollaboratorUnavailable, OllamaClient, clean_response


def _response(status: int, body: Any) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.url = "http://llm.test/api/generate"
    response._content = body.encode() if isinstance(body, str) else json.dumps(body).encode()
    return response


class StubSession:
    def __init__(self, outcome: Any) -> None:
        self.outcome = outcome
        self.posts: list[tuple[str, Any, float]] = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _client(outcome: Any) -> tuple[OllamaClient, StubSession]:
    session = StubSession(outcome)
    return OllamaClient("http://llm.test/", "tiny", timeout=5, session=session), session  # type: ignore[arg-type]


def test_generate_posts_non_streaming_request() -> None:
    client, session = _client(_response(200, {"response": "Hello back!"}))

    assert client.generate("hi") == "Hello back!"
    url, payload, timeout = session.posts[0]
    assert url == "http://llm.test/api/generate"
    assert payload["model"] == "tiny"
    assert payload["prompt"] == "hi"
    assert payload["stream"] is False
    assert timeout == 5


def test_generate_strips_reasoning_block() -> None:
    client, _ = _client(_response(200, {"response": "<think>plan the answer</think>\nSure thing."}))

    assert client.generate("hi") == "Sure thing."


@pytest.mark.parametrize(
    "outcome",
    [
        requests.ConnectionError("refused"),
        _response(500, {"error": "model crashed"}),
        _response(200, "not json at all"),
        _response(200, ["list"]),
        _response(200, {"response": ""}),
        _response(200, {"response": "<think>never finished"}),
    ],
)
def test_generate_raises_when_unusable(outcome: Any) -> None:
    client, _ = _client(outcome)

    with pytest.raises(CollaboratorUnavailable):
        client.generate("hi")


def test_clean_response_removes_filler_preamble() -> None:
    assert clean_response("Okay, the user wants a greeting. Hello friend!") == "Hello friend!"


def test_clean_response_falls_back_to_quoted_thinking() -> None:
    assert clean_response("", 'I will answer "Nice to meet you" and stop.') == "Nice to meet you"


def test_clean_response_falls_back_to_last_thought_sentence() -> None:
    assert clean_response("", "Long reasoning here. Welcome aboard") == "Welcome aboard"


def test_clean_response_keeps_plain_text() -> None:
    assert clean_response("  Plain reply  ") == "Plain reply"
