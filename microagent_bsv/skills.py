"""Capabilities the model can invoke by writing command syntax in its reply.

Each skill recognizes its own bracketed syntax, validates matches against its
bounds, can remove the syntax from visible text, and can carry out an action.
Skills are registered explicitly in a :class:`SkillRegistry`.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .gateway import GatewayError
from .keys import is_valid_address
from .model import SkillAction
from .tx_builder import InsufficientFundsError, SignatureContextError

logger = logging.getLogger(__name__)

_WHITESPACE_RUN = re.compile(r"\s{2,}")


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RUN.sub(" ", text).strip()


@dataclass
class SkillContext:
    """What a skill may know about the current exchange."""

    sender: str | None
    my_address: str
    spender: Any = None


@dataclass
class SkillOutcome:
    success: bool
    txid: str | None = None
    fee_sats: int | None = None
    error: str | None = None


class Skill(ABC):
    """Contract every capability extension satisfies."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique skill name; used as the ``kind`` of its actions."""
        ...

    @abstractmethod
    def describe(self, context: SkillContext) -> str:
        """Prompt fragment explaining the command syntax to the model."""
        ...

    @abstractmethod
    def matches(self, text: str) -> List[SkillAction]:
        """Return validated actions found in ``text``; invalid ones are dropped."""
        ...

    @abstractmethod
    def strip(self, text: str) -> str:
        """Return ``text`` with every occurrence of the command syntax removed."""
        ...

    @abstractmethod
    def execute(self, action: SkillAction, context: SkillContext) -> SkillOutcome:
        ...


class SendSatsSkill(Skill):
    """``[SEND <amount_sats> <address>]`` value transfers."""

    pattern = re.compile(r"\[SEND\s+(\d+)\s+([1mn][a-km-zA-HJ-NP-Z1-9]{25,34})\]")

    def __init__(self, min_sats: int = 100, max_sats: int = 10000, network: str = "main") -> None:
        if min_sats <= 0 or max_sats < min_sats:
            raise ValueError("SendSatsSkill bounds must satisfy 0 < min_sats <= max_sats")
        self.min_sats = min_sats
        self.max_sats = max_sats
        self.network = network

    @property
    def name(self) -> str:
        return "send-sats"

    def describe(self, context: SkillContext) -> str:
        return (
            "You can send BSV using: [SEND <amount_sats> <address>]. "
            "Example: [SEND 500 1ABC...]. "
            f"Min {self.min_sats}, max {self.max_sats} sats per send. "
            "Only send when explicitly asked or when it makes sense."
        )

    def matches(self, text: str) -> List[SkillAction]:
        actions: List[SkillAction] = []
        for match in self.pattern.finditer(text):
            amount = int(match.group(1))
            address = match.group(2)
            if not self.min_sats <= amount <= self.max_sats:
                logger.debug("Dropping out-of-bounds transfer: %s", match.group(0))
                continue
            if not is_valid_address(address, self.network):
                logger.debug("Dropping transfer to invalid address: %s", match.group(0))
                continue
            actions.append(
                SkillAction(
                    kind=self.name,
                    parameters={"amount": amount, "address": address},
                    raw_text=match.group(0),
                )
            )
        return actions

    def strip(self, text: str) -> str:
        return normalize_whitespace(self.pattern.sub("", text))

    def execute(self, action: SkillAction, context: SkillContext) -> SkillOutcome:
        amount = int(action.parameters["amount"])
        address = str(action.parameters["address"])
        if address == context.my_address:
            return SkillOutcome(success=False, error="Cannot send to self")
        if not self.min_sats <= amount <= self.max_sats:
            return SkillOutcome(success=False, error=f"Amount {amount} outside [{self.min_sats}, {self.max_sats}]")
        if context.spender is None:
            return SkillOutcome(success=False, error="No spender available")
        try:
            built = context.spender.send_payment(amount, address)
        except (InsufficientFundsError, SignatureContextError, GatewayError, ValueError) as exc:
            return SkillOutcome(success=False, error=str(exc))
        return SkillOutcome(success=True, txid=built.txid, fee_sats=built.fee_sats)


class SkillRegistry:
    """Explicit registry of skills available to the orchestrator."""

    def __init__(self) -> None:
        self._skills: Dict[str, Skill] = {}

    def register(self, skill: Skill) -> None:
        """Register a skill. Raises ValueError if the name is taken."""
        if skill.name in self._skills:
            raise ValueError(f"Skill already registered: {skill.name}")
        self._skills[skill.name] = skill
        logger.debug("Skill registered: %s", skill.name)

    def get(self, name: str) -> Skill | None:
        return self._skills.get(name)

    def list_skills(self) -> List[Skill]:
        return list(self._skills.values())

    def describe_all(self, context: SkillContext) -> str:
        fragments = [skill.describe(context) for skill in self._skills.values()]
        return "\n".join(fragment for fragment in fragments if fragment)

    @classmethod
    def with_defaults(
        cls, send_min_sats: int = 100, send_max_sats: int = 10000, network: str = "main"
    ) -> "SkillRegistry":
        registry = cls()
        registry.register(SendSatsSkill(send_min_sats, send_max_sats, network))
        return registry


@dataclass
class Extraction:
    actions: List[SkillAction] = field(default_factory=list)
    stripped_text: str = ""

    def partition(self, sender: str | None) -> Tuple[List[SkillAction], List[SkillAction]]:
        """Split transfers to ``sender`` (folded into the reply) from the rest."""

        folded: List[SkillAction] = []
        separate: List[SkillAction] = []
        for action in self.actions:
            destination = action.parameters.get("address")
            if sender is not None and destination == sender:
                folded.append(action)
            else:
                separate.append(action)
        return folded, separate

    def folded_sats(self, sender: str | None) -> int:
        folded, _ = self.partition(sender)
        return sum(int(action.parameters.get("amount", 0)) for action in folded)


class ActionExtractor:
    """Find skill invocations in model output and produce the visible reply."""

    def __init__(self, registry: SkillRegistry) -> None:
        self.registry = registry

    def extract(self, text: str) -> Extraction:
        actions: List[SkillAction] = []
        stripped = text
        for skill in self.registry.list_skills():
            actions.extend(skill.matches(stripped))
            stripped = skill.strip(stripped)
        return Extraction(actions=actions, stripped_text=normalize_whitespace(stripped))
