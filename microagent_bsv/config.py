"""Shared configuration loader for MicroAgent."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from .gateway import network_base_url
from .llm import DEFAULT_LLM_ENDPOINT, DEFAULT_LLM_MODEL, DEFAULT_LLM_TIMEOUT_SECONDS
from .model import DEFAULT_PROTOCOL_PREFIX


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


CONFIG_FILENAME = "config.yaml"
PERSONA_FILENAME = "persona.txt"
ENV_PREFIX = "MICROAGENT_"
NETWORKS = ("main", "test")


@dataclass
class AgentConfig:
    """Runtime settings for one agent directory."""

    agent_dir: Path = field(default_factory=Path.cwd)
    llm_endpoint: str = DEFAULT_LLM_ENDPOINT
    llm_model: str = DEFAULT_LLM_MODEL
    llm_timeout_seconds: float = DEFAULT_LLM_TIMEOUT_SECONDS
    fee_rate: float = 0.5
    loop_interval_seconds: float = 60.0
    protocol_prefix: str = DEFAULT_PROTOCOL_PREFIX
    http_timeout_seconds: float = 15.0
    network: str = "main"
    gateway_url: str | None = None
    reply_amount_sats: int = 1000
    min_reply_balance_sats: int = 1000
    safety_buffer_sats: int = 5000
    max_reply_chars: int = 1000
    history_limit: int = 20
    processed_limit: int = 1000
    processed_keep: int = 500
    inbox_limit: int = 100
    inbox_keep: int = 50
    action_limit: int = 500
    fetch_delay_seconds: float = 1.0
    funding_reminder_loops: int = 3
    send_min_sats: int = 100
    send_max_sats: int = 10000
    persona: str | None = None

    @property
    def resolved_gateway_url(self) -> str:
        return self.gateway_url or network_base_url(self.network)

    @property
    def wallet_path(self) -> Path:
        return self.agent_dir / "wallet.json"

    @property
    def state_path(self) -> Path:
        return self.agent_dir / "state.json"

    @property
    def log_path(self) -> Path:
        return self.agent_dir / "microagent.log"


_FIELD_TYPES = {f.name: f.type for f in fields(AgentConfig) if f.name != "agent_dir"}


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _apply_legacy_sections(raw: dict[str, Any]) -> dict[str, Any]:
    """Map the older ``ollama: {url, model}`` block onto flat keys."""

    merged = dict(raw)
    legacy = merged.pop("ollama", None)
    if isinstance(legacy, dict):
        if merged.get("llm_endpoint") is None and legacy.get("url"):
            merged["llm_endpoint"] = legacy["url"]
        if merged.get("llm_model") is None and legacy.get("model"):
            merged["llm_model"] = legacy["model"]
    elif legacy is not None:
        raise ConfigurationError("Expected 'ollama' to be a mapping")
    return merged


def _coerce(name: str, raw: Any, *, source: str) -> Any:
    if raw is None:
        return None
    kind = _FIELD_TYPES[name]
    try:
        if "int" in kind and "str" not in kind:
            if isinstance(raw, bool):
                raise TypeError("boolean is not an integer")
            return int(raw)
        if "float" in kind:
            return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {name} in {source}: {raw}") from exc
    return str(raw)


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _env_values(env_map: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in _FIELD_TYPES:
        raw = env_map.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = _coerce(name, raw, source="environment")
    return values


def _validate(config: AgentConfig) -> None:
    if config.network not in NETWORKS:
        raise ConfigurationError(f"network must be one of {NETWORKS}, got {config.network!r}")
    if not config.protocol_prefix:
        raise ConfigurationError("protocol_prefix must be non-empty")
    if config.fee_rate <= 0:
        raise ConfigurationError("fee_rate must be positive")
    for name in ("history_limit", "processed_limit", "inbox_limit", "action_limit", "max_reply_chars"):
        if getattr(config, name) <= 0:
            raise ConfigurationError(f"{name} must be positive")
    if not 0 < config.processed_keep <= config.processed_limit:
        raise ConfigurationError("processed_keep must be between 1 and processed_limit")
    if not 0 < config.inbox_keep <= config.inbox_limit:
        raise ConfigurationError("inbox_keep must be between 1 and inbox_limit")
    if not 0 < config.send_min_sats <= config.send_max_sats:
        raise ConfigurationError("send_min_sats must be positive and not exceed send_max_sats")
    for name in ("reply_amount_sats", "min_reply_balance_sats", "safety_buffer_sats"):
        if getattr(config, name) < 0:
            raise ConfigurationError(f"{name} must not be negative")


def load_agent_config(
    agent_dir: str | Path | None = None,
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> AgentConfig:
    """Load settings from ``config.yaml``, ``MICROAGENT_*`` variables, and overrides.

    Later sources win: overrides, then environment, then the file, then
    defaults. A persona may also be supplied as ``persona.txt`` in the agent
    directory.
    """

    env_map = os.environ if env is None else env
    root = Path(agent_dir).expanduser().resolve() if agent_dir is not None else Path.cwd()
    explicit_path = config_path is not None
    path = Path(config_path).expanduser() if explicit_path else root / CONFIG_FILENAME

    file_values = _apply_legacy_sections(_load_config_file(path, required=explicit_path))
    unknown = sorted(set(file_values) - set(_FIELD_TYPES))
    if unknown:
        raise ConfigurationError(f"Unknown settings in {path}: {', '.join(unknown)}")
    file_values = {
        name: _coerce(name, value, source=str(path)) for name, value in file_values.items()
    }
    env_values = _env_values(env_map)
    override_values = {
        name: _coerce(name, value, source="overrides")
        for name, value in dict(overrides or {}).items()
        if name in _FIELD_TYPES
    }

    resolved: dict[str, Any] = {}
    for name in _FIELD_TYPES:
        value = _first_value(override_values.get(name), env_values.get(name), file_values.get(name))
        if value is not None:
            resolved[name] = value

    config = AgentConfig(agent_dir=root, **resolved)
    if config.persona is None:
        persona_path = root / PERSONA_FILENAME
        if persona_path.exists():
            config.persona = persona_path.read_text().strip() or None
    _validate(config)
    return config
