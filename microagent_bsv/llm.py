"""Language-model collaborator backed by an Ollama-compatible endpoint."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict

import requests
from requests import RequestException

logger = logging.getLogger(__name__)

DEFAULT_LLM_ENDPOINT = "http://localhost:11434"
DEFAULT_LLM_MODEL = "qwen3:8b"
DEFAULT_LLM_TIMEOUT_SECONDS = 90.0
DEFAULT_GENERATION_OPTIONS: Dict[str, Any] = {
    "temperature": 0.9,
    "num_predict": 1200,
    "repeat_penalty": 1.5,
    "repeat_last_n": 256,
}

_THINK_TAG = re.compile(r"</?think>")
_FILLER_PREAMBLE = re.compile(
    r"^(Okay|Alright|Let me|I need to|The user|Hmm|So|I should|I'll)[^.]*\.\s*",
    re.IGNORECASE,
)
_QUOTED = re.compile(r'"([^"]{5,100})"')
_SENTENCE_BREAK = re.compile(r"[.!?]\s+")


class CollaboratorUnavailable(RuntimeError):
    """Raised when the model cannot produce a usable answer."""


def clean_response(response: str, thinking: str = "") -> str:
    """Strip reasoning markup and filler from a raw model answer.

    When the answer is empty but the model exposed its reasoning, a quoted
    phrase or a short final sentence from that reasoning is used instead.
    """

    text = (response or "").strip()
    if not text and thinking:
        thought = thinking.strip()
        quoted = _QUOTED.search(thought)
        if quoted:
            text = quoted.group(1)
        else:
            last = _SENTENCE_BREAK.split(thought)[-1].strip()
            if 2 < len(last) < 120:
                text = last

    if "</think>" in text:
        text = text.split("</think>")[-1].strip()
    if text.startswith("<think>"):
        text = ""
    text = _THINK_TAG.sub("", text).strip()
    return _FILLER_PREAMBLE.sub("", text, count=1).strip()


class OllamaClient:
    """Call ``/api/generate`` without streaming and return cleaned text."""

    def __init__(
        self,
        endpoint: str = DEFAULT_LLM_ENDPOINT,
        model: str = DEFAULT_LLM_MODEL,
        timeout: float = DEFAULT_LLM_TIMEOUT_SECONDS,
        options: Dict[str, Any] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.options = dict(DEFAULT_GENERATION_OPTIONS if options is None else options)
        self._session = session or requests.Session()

    def generate(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": self.options,
        }
        try:
            response = self._session.post(
                f"{self.endpoint}/api/generate", json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except RequestException as exc:
            logger.error("LLM ERROR: %s", exc, exc_info=logger.isEnabledFor(logging.DEBUG))
            raise CollaboratorUnavailable(f"LLM request failed: {exc}") from exc
        except ValueError as exc:
            raise CollaboratorUnavailable("LLM returned malformed JSON") from exc

        if not isinstance(body, dict):
            raise CollaboratorUnavailable("LLM returned an unexpected payload")
        text = clean_response(str(body.get("response") or ""), str(body.get("thinking") or ""))
        if not text:
            raise CollaboratorUnavailable("LLM returned an empty answer")
        return text
