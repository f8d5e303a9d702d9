"""
Configuration loader for LMS Engage.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.0
    max_tokens: int = 300
    api_key: str = ""


@dataclass
class ChannelConfig:
    enabled: bool = True
    concurrency: int = 4                # max in-flight sends for the channel pool
    batch_size: int = 10                # items leased per claim
    max_retries: int = 3                # channel default when an item does not set one
    send_timeout_seconds: float = 15.0
    rate_per_second: float = 10.0
    burst: int = 10
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./lms_engage.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"
    seed_on_startup: bool = True                       # load default templates, articles, suggestions


@dataclass
class QueueConfig:
    claim_timeout_seconds: int = 300    # lease length before a claim is reclaimable
    retry_backoff_base: int = 60        # base seconds for exponential retry backoff
    retry_backoff_cap: int = 3600       # ceiling for a single backoff step
    poll_interval_seconds: float = 2.0  # idle sleep between empty claims
    default_priority: int = 3


@dataclass
class AssistantConfig:
    escalation_threshold: float = 0.6
    fallback_escalation_threshold: int = 2
    inactivity_timeout_minutes: int = 30
    sweep_interval_seconds: int = 60
    fallback_language: str = "es"
    search_limit: int = 5
    support_recipient_id: str = "support-team"
    escalation_template: str = "agent_escalation"
    classifier: str = "keyword"         # "keyword" | "llm"


@dataclass
class DirectoryConfig:
    type: str = "static"                # "static" | "rest"
    base_url: str = ""
    auth_token: str = ""
    address_endpoint: str = "/users/{user_id}/contact"
    timeout_seconds: float = 5.0


_DEFAULT_CHANNELS = ("email", "push", "in_app", "sms")


@dataclass
class Settings:
    app_name: str = "LMS Engage"
    debug: bool = False
    timezone: str = "UTC"
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    assistant: AssistantConfig = field(default_factory=AssistantConfig)
    directory: DirectoryConfig = field(default_factory=DirectoryConfig)
    channels: dict[str, ChannelConfig] = field(
        default_factory=lambda: {name: ChannelConfig() for name in _DEFAULT_CHANNELS}
    )

    def channel(self, name: str) -> ChannelConfig:
        """Config for a channel, falling back to defaults for unlisted channels."""
        return self.channels.get(name) or ChannelConfig()


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _merge(dc_type, raw: dict[str, Any]):
    """Build a config dataclass from a raw dict, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in dc_type.__dataclass_fields__}
    return dc_type(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ENGAGE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "llm" in raw:
            settings.llm = _merge(LLMConfig, raw["llm"])
        if "database" in raw:
            settings.database = _merge(DatabaseConfig, raw["database"])
        if "queue" in raw:
            settings.queue = _merge(QueueConfig, raw["queue"])
        if "assistant" in raw:
            settings.assistant = _merge(AssistantConfig, raw["assistant"])
        if "directory" in raw:
            settings.directory = _merge(DirectoryConfig, raw["directory"])

        if "channels" in raw:
            for ch_name, ch_data in (raw["channels"] or {}).items():
                settings.channels[ch_name] = _merge(ChannelConfig, ch_data or {})

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
