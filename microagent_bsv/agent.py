"""The polling loop that ties ingestion, reasoning, and replies together."""

from __future__ import annotations

import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .config import AgentConfig
from .conversation import ConversationStore
from .fees import resolve_fee_rate
from .gateway import GatewayError
from .ingestor import MessageIngestor
from .llm import CollaboratorUnavailable
from .model import ROLE_THEM, InboundEvent, ProtocolMessage, SkillAction, utcnow
from .skills import ActionExtractor, SkillContext, SkillOutcome, SkillRegistry
from .state import AgentState, JsonStateStore, StateError
from .tx_builder import ChainSpender, InsufficientFundsError, SignatureContextError, TransactionBuilder
from .wallet import Wallet

logger = logging.getLogger(__name__)

DEFAULT_PERSONA = "You are MicroAgent, a minimal autonomous agent living on the BSV blockchain."
RECENT_REPLY_COUNT = 5


@dataclass
class CycleReport:
    """What a single cycle observed and did."""

    balance: int | None = None
    events: List[InboundEvent] = field(default_factory=list)
    replies: List[str] = field(default_factory=list)
    transfers: List[str] = field(default_factory=list)
    unanswered: List[str] = field(default_factory=list)


class MicroAgent:
    """Single-threaded agent: one cycle per polling interval, all spends serialized."""

    def __init__(
        self,
        config: AgentConfig,
        wallet: Wallet,
        gateway: Any,
        llm: Any,
        registry: SkillRegistry,
        state_store: JsonStateStore,
        *,
        spender: ChainSpender | None = None,
        pacer: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.wallet = wallet
        self.gateway = gateway
        self.llm = llm
        self.registry = registry
        self.state_store = state_store
        self.pacer = pacer
        self.spender = spender or ChainSpender(
            gateway,
            wallet,
            TransactionBuilder(resolve_fee_rate(config.fee_rate)),
            config.safety_buffer_sats,
        )
        self.ingestor = MessageIngestor(
            gateway,
            wallet.address,
            prefix=config.protocol_prefix,
            network=config.network,
            fetch_delay_seconds=config.fetch_delay_seconds,
            pacer=pacer,
            processed_limit=config.processed_limit,
            processed_keep=config.processed_keep,
        )
        self.extractor = ActionExtractor(registry)
        self._stopping = False

    @property
    def address(self) -> str:
        return self.wallet.address

    def run_cycle(self, state: AgentState) -> CycleReport:
        """Run one poll/reply cycle against ``state``; the caller persists it."""

        report = CycleReport()
        state.loop_count += 1
        state.last_loop = utcnow()

        try:
            balance = int(self.gateway.get_balance(self.address))
        except GatewayError as exc:
            logger.warning("BALANCE ERROR: %s", exc)
            return report
        state.last_balance = balance
        report.balance = balance

        if balance <= 0:
            if state.loop_count <= self.config.funding_reminder_loops:
                logger.info("WAITING FOR FUNDING: send BSV to %s", self.address)
            return report

        result = self.ingestor.poll(state)
        report.events = list(result.events)
        conversations = ConversationStore(state.conversations, self.config.history_limit)

        for event in result.conversational:
            try:
                balance = self._handle_message(state, conversations, event, balance, report)
            except Exception:  # pragma: no cover - one message must not stop the cycle
                logger.exception("REPLY ERROR: unexpected failure handling %s", event.txid)
                report.unanswered.append(event.txid)

        seen = {entry.get("txid") for entry in state.inbox}
        fresh = [event for event in result.events if event.txid not in seen]
        if fresh:
            state.append_inbox(
                [event.to_dict() for event in fresh],
                self.config.inbox_limit,
                self.config.inbox_keep,
            )
        return report

    def build_prompt(
        self, conversations: ConversationStore, event: InboundEvent, balance: int
    ) -> str:
        message = event.message
        text = message.text if message is not None else ""
        context = SkillContext(sender=event.sender, my_address=self.address)

        lines = [
            self.config.persona or DEFAULT_PERSONA,
            "",
            f"Your BSV address: {self.address}",
            f"Your balance: {balance} sats",
        ]
        commands = self.registry.describe_all(context)
        if commands:
            lines += ["", "Available commands:", commands]

        history = [turn for turn in conversations.history(event.sender) if turn.txid != event.txid]
        if history:
            lines += ["", "Conversation history:"]
            for turn in history:
                speaker = "Them" if turn.role == ROLE_THEM else "You"
                lines.append(f"{speaker}: {turn.text}")

        recent = conversations.recent_replies(event.sender, RECENT_REPLY_COUNT)
        if recent:
            lines += ["", "Your recent replies (do NOT repeat these):"]
            lines += [f"- {reply}" for reply in recent]

        lines += [
            "",
            f"New message from {conversations.key_for(event.sender)}:",
            text,
            "",
            f"Reply with something new and relevant in under {self.config.max_reply_chars} characters.",
        ]
        return "\n".join(lines)

    def _handle_message(
        self,
        state: AgentState,
        conversations: ConversationStore,
        event: InboundEvent,
        balance: int,
        report: CycleReport,
    ) -> int:
        """Answer one inbound message; returns the estimated remaining balance."""

        message = event.message
        if message is None:  # pragma: no cover - conversational events carry a message
            return balance
        sender = event.sender
        inbound_text = message.text

        logger.info("THINKING about %s from %s", event.txid, conversations.key_for(sender))
        try:
            answer = self.llm.generate(self.build_prompt(conversations, event, balance))
        except CollaboratorUnavailable as exc:
            logger.warning("LLM UNAVAILABLE: %s", exc)
            conversations.record_inbound(sender, inbound_text, event.txid)
            report.unanswered.append(event.txid)
            return balance

        if balance <= self.config.min_reply_balance_sats:
            logger.warning("BALANCE TOO LOW TO REPLY: %d sats", balance)
            conversations.record_inbound(sender, inbound_text, event.txid)
            report.unanswered.append(event.txid)
            return balance

        extraction = self.extractor.extract(answer)
        _, separate = extraction.partition(sender)
        context = SkillContext(sender=sender, my_address=self.address, spender=self.spender)
        for action in separate:
            if self._already_done(state, event, action):
                logger.info("SKILL %s already broadcast for %s; skipping", action.kind, event.txid)
                continue
            balance -= self._run_skill(state, event, action, context, report)

        folded_sats = extraction.folded_sats(sender)
        reply_text = extraction.stripped_text
        if folded_sats:
            reply_text = f"{reply_text} [sent {folded_sats} sats ✓]".strip()
        reply_text = reply_text[: self.config.max_reply_chars]

        amount = self.config.reply_amount_sats + folded_sats
        fields = ProtocolMessage.reply(event.txid, reply_text, self.config.protocol_prefix).to_fields()
        logger.info('REPLYING to %s: "%s"', conversations.key_for(sender), reply_text)
        try:
            built = self.spender.send_message(fields, recipient=sender, amount_sats=amount)
        except ValueError as exc:
            # Malformed recipient or payload; retrying cannot succeed.
            logger.error("REPLY ERROR: %s; giving up on %s", exc, event.txid)
            state.mark_processed(event.txid, self.config.processed_limit, self.config.processed_keep)
            conversations.record_inbound(sender, inbound_text, event.txid)
            report.unanswered.append(event.txid)
            return balance
        except (InsufficientFundsError, SignatureContextError, GatewayError) as exc:
            logger.error("REPLY ERROR: %s", exc)
            conversations.record_inbound(sender, inbound_text, event.txid)
            report.unanswered.append(event.txid)
            return balance

        logger.info("REPLY TX: %s (fee: %d sats)", built.txid, built.fee_sats)
        state.mark_processed(event.txid, self.config.processed_limit, self.config.processed_keep)
        state.record_action(
            {
                "type": "reply",
                "to": sender,
                "reply_to": event.txid,
                "text": reply_text,
                "txid": built.txid,
                "amount_sats": amount if sender else 0,
                "time": utcnow().isoformat(),
            },
            self.config.action_limit,
        )
        conversations.record_inbound(sender, inbound_text, event.txid)
        conversations.record_reply(sender, reply_text, built.txid)
        report.replies.append(built.txid)
        self.persist(state)
        return balance - (amount if sender else 0) - built.fee_sats

    @staticmethod
    def _already_done(state: AgentState, event: InboundEvent, action: SkillAction) -> bool:
        """True when an earlier attempt at this message already ran ``action``."""

        return any(
            entry.get("success")
            and entry.get("type") == action.kind
            and entry.get("reply_to") == event.txid
            and entry.get("params") == dict(action.parameters)
            for entry in state.actions
        )

    def _run_skill(
        self,
        state: AgentState,
        event: InboundEvent,
        action: SkillAction,
        context: SkillContext,
        report: CycleReport,
    ) -> int:
        """Execute a standalone action and log it; returns sats spent."""

        skill = self.registry.get(action.kind)
        if skill is None:
            logger.warning("SKILL %s is not registered; ignoring %s", action.kind, action.raw_text)
            return 0

        logger.info("SKILL %s: %s", action.kind, action.raw_text)
        outcome: SkillOutcome = skill.execute(action, context)
        entry: Dict[str, Any] = {
            "type": action.kind,
            "reply_to": event.txid,
            "params": dict(action.parameters),
            "success": outcome.success,
            "time": utcnow().isoformat(),
        }
        if outcome.success:
            logger.info("SKILL %s TX: %s (fee: %s sats)", action.kind, outcome.txid, outcome.fee_sats)
            entry["txid"] = outcome.txid
            report.transfers.append(outcome.txid or "")
        else:
            logger.warning("SKILL %s FAILED: %s", action.kind, outcome.error)
            entry["error"] = outcome.error
        state.record_action(entry, self.config.action_limit)

        if not outcome.success:
            return 0
        return int(action.parameters.get("amount", 0)) + int(outcome.fee_sats or 0)

    def persist(self, state: AgentState) -> None:
        try:
            self.state_store.save_atomic(state)
        except (OSError, StateError):
            logger.exception("Failed to persist state to %s", self.state_store.path)

    def stop(self) -> None:
        self._stopping = True

    def run_forever(
        self,
        state: AgentState | None = None,
        *,
        max_cycles: int | None = None,
        handle_signals: bool = True,
    ) -> AgentState:
        """Poll until stopped; state is persisted after every cycle."""

        if state is None:
            state = self.state_store.load()
        if handle_signals and threading.current_thread() is threading.main_thread():
            self._install_signal_handlers(state)

        logger.info("MicroAgent running at %s (network=%s)", self.address, self.config.network)
        cycles = 0
        while not self._stopping:
            try:
                self.run_cycle(state)
            except Exception:
                logger.exception("Agent cycle failed")
            finally:
                self.persist(state)
            cycles += 1
            if self._stopping or (max_cycles is not None and cycles >= max_cycles):
                break
            self.pacer(self.config.loop_interval_seconds)
        return state

    def _install_signal_handlers(self, state: AgentState) -> None:
        def _shutdown(signum: int, _frame: Any) -> None:
            logger.info("Received signal %d; saving state and exiting", signum)
            self.stop()
            self.persist(state)
            raise SystemExit(0)

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)
