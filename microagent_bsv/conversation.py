"""Per-sender conversation history with a sliding retention window."""

from __future__ import annotations

from typing import Dict, List

from .model import ROLE_ME, ROLE_THEM, ConversationTurn

UNKNOWN_SENDER = "unknown"
DEFAULT_HISTORY_LIMIT = 20


class ConversationStore:
    """View over ``AgentState.conversations`` that enforces the history bound."""

    def __init__(
        self,
        conversations: Dict[str, List[ConversationTurn]],
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self._conversations = conversations
        self.history_limit = history_limit

    @staticmethod
    def key_for(sender: str | None) -> str:
        return sender or UNKNOWN_SENDER

    def history(self, sender: str | None) -> List[ConversationTurn]:
        return list(self._conversations.get(self.key_for(sender), []))

    def recent_replies(self, sender: str | None, count: int = 5) -> List[str]:
        return [turn.text for turn in self.history(sender) if turn.role == ROLE_ME][-count:]

    def has_inbound(self, sender: str | None, txid: str) -> bool:
        return any(
            turn.role == ROLE_THEM and turn.txid == txid
            for turn in self._conversations.get(self.key_for(sender), [])
        )

    def append(self, sender: str | None, turn: ConversationTurn) -> None:
        key = self.key_for(sender)
        turns = self._conversations.setdefault(key, [])
        turns.append(turn)
        if len(turns) > self.history_limit:
            del turns[: len(turns) - self.history_limit]

    def record_inbound(self, sender: str | None, text: str, txid: str) -> bool:
        """Append a ``them`` turn unless this ``txid`` is already recorded."""

        if self.has_inbound(sender, txid):
            return False
        self.append(sender, ConversationTurn(role=ROLE_THEM, text=text, txid=txid))
        return True

    def record_reply(self, sender: str | None, text: str, txid: str | None = None) -> None:
        self.append(sender, ConversationTurn(role=ROLE_ME, text=text, txid=txid))
