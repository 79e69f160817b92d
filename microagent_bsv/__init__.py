"""MicroAgent: an autonomous agent that converses over BSV data-carrier outputs."""

from .agent import CycleReport, MicroAgent
from .config import AgentConfig, ConfigurationError, load_agent_config
from .conversation import ConversationStore
from .fees import CoinSelection, estimate_fee, select_coins
from .gateway import GatewayError, WhatsOnChainClient
from .ingestor import IngestionResult, MessageIngestor
from .llm import CollaboratorUnavailable, OllamaClient
from .model import ConversationTurn, InboundEvent, ProtocolMessage, SkillAction, Utxo
from .script_codec import ScriptDecodeError, ScriptEncodeError, decode, encode
from .skills import ActionExtractor, SendSatsSkill, Skill, SkillRegistry
from .state import AgentState, JsonStateStore, StateError
from .tx_builder import (
    BuiltTransaction,
    ChainSpender,
    InsufficientFundsError,
    SignatureContextError,
    TransactionBuilder,
)
from .wallet import Wallet, WalletError

__all__ = [
    "ActionExtractor",
    "AgentConfig",
    "AgentState",
    "BuiltTransaction",
    "ChainSpender",
    "CoinSelection",
    "CollaboratorUnavailable",
    "ConfigurationError",
    "ConversationStore",
    "ConversationTurn",
    "CycleReport",
    "GatewayError",
    "InboundEvent",
    "IngestionResult",
    "InsufficientFundsError",
    "JsonStateStore",
    "MessageIngestor",
    "MicroAgent",
    "OllamaClient",
    "ProtocolMessage",
    "ScriptDecodeError",
    "ScriptEncodeError",
    "SendSatsSkill",
    "SignatureContextError",
    "Skill",
    "SkillAction",
    "SkillRegistry",
    "StateError",
    "TransactionBuilder",
    "Utxo",
    "Wallet",
    "WalletError",
    "WhatsOnChainClient",
    "decode",
    "encode",
    "estimate_fee",
    "load_agent_config",
    "select_coins",
]
