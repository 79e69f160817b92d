"""Crash-recoverable agent state and its atomic JSON store."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from .model import ConversationTurn

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateError(RuntimeError):
    """Raised when the persisted state document cannot be read or parsed."""


def _trim(items: List[Any], limit: int, keep: int) -> List[Any]:
    if len(items) > limit:
        return items[-keep:] if keep > 0 else []
    return items


@dataclass
class AgentState:
    """Everything the agent must remember across restarts."""

    processed_txids: List[str] = field(default_factory=list)
    conversations: Dict[str, List[ConversationTurn]] = field(default_factory=dict)
    inbox: List[Dict[str, Any]] = field(default_factory=list)
    actions: List[Dict[str, Any]] = field(default_factory=list)
    loop_count: int = 0
    last_balance: int | None = None
    last_loop: datetime | None = None

    def is_processed(self, txid: str) -> bool:
        return txid in self.processed_txids

    def mark_processed(self, txid: str, limit: int = 1000, keep: int = 500) -> bool:
        """Record ``txid`` once; returns ``False`` if it was already recorded.

        When the list grows past ``limit`` only the newest ``keep`` ids stay.
        """

        if txid in self.processed_txids:
            return False
        self.processed_txids.append(txid)
        self.processed_txids = _trim(self.processed_txids, limit, keep)
        return True

    def append_inbox(self, entries: List[Dict[str, Any]], limit: int = 100, keep: int = 50) -> None:
        self.inbox.extend(entries)
        self.inbox = _trim(self.inbox, limit, keep)

    def record_action(self, action: Dict[str, Any], limit: int = 500) -> None:
        self.actions.append(action)
        self.actions = _trim(self.actions, limit, limit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "processed_txids": list(self.processed_txids),
            "conversations": {
                sender: [turn.to_dict() for turn in turns]
                for sender, turns in self.conversations.items()
            },
            "inbox": list(self.inbox),
            "actions": list(self.actions),
            "loop_count": self.loop_count,
            "last_balance": self.last_balance,
            "last_loop": self.last_loop.isoformat() if self.last_loop else None,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AgentState":
        if not isinstance(payload, dict):
            raise StateError("State document must be a JSON object")
        try:
            conversations = {
                str(sender): [ConversationTurn.from_dict(turn) for turn in turns]
                for sender, turns in (payload.get("conversations") or {}).items()
            }
            last_loop_raw = payload.get("last_loop")
            return cls(
                processed_txids=[str(txid) for txid in payload.get("processed_txids") or []],
                conversations=conversations,
                inbox=list(payload.get("inbox") or []),
                actions=list(payload.get("actions") or []),
                loop_count=int(payload.get("loop_count") or 0),
                last_balance=payload.get("last_balance"),
                last_loop=datetime.fromisoformat(last_loop_raw) if last_loop_raw else None,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise StateError(f"Malformed state document: {exc}") from exc


class JsonStateStore:
    """Load and atomically replace the agent's state document."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> AgentState:
        if not self.path.exists():
            logger.info("No state at %s; starting fresh", self.path)
            return AgentState()
        try:
            payload = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            raise StateError(f"Cannot read state file {self.path}: {exc}") from exc
        return AgentState.from_dict(payload)

    def save_atomic(self, state: AgentState) -> None:
        """Write to a sibling temp file, fsync, then rename over the target."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        document = json.dumps(state.to_dict(), indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(document)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
