"""
Configuration loader for the campaign execution engine.
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
class DatabaseConfig:
    url: str = "sqlite:///./campaign_engine.db"       # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "campaign-workers"
    consumer_concurrency: int = 5       # max concurrent jobs per worker
    delayed_promote_interval: int = 5   # seconds between delayed-queue scans
    retry_backoff_base: int = 60        # base seconds for exponential retry backoff
    max_attempts: int = 3
    job_id_ttl_seconds: int = 30 * 24 * 3600
    visibility_timeout_seconds: int = 300  # unacked stream entries older than this are reclaimed
    reclaim_interval_seconds: int = 30    # seconds between reclaim scans per consumer


@dataclass
class EmailConfig:
    provider: str = "sendgrid"
    api_key: str = ""
    base_url: str = "https://api.sendgrid.com/v3"
    timeout_seconds: float = 30.0
    categories: list[str] = field(default_factory=lambda: ["campaign"])


@dataclass
class EngineConfig:
    default_no_open_after: str = "PT72H"
    default_no_click_after: str = "PT24H"
    reject_duplicate_transitions: bool = False

    def default_timer(self, event_type: str) -> Optional[str]:
        return getattr(self, f"default_{event_type}_after", None)


@dataclass
class RecoveryConfig:
    enabled: bool = True
    batch_size: int = 100
    expiry_threshold_hours: int = 24


@dataclass
class Settings:
    app_name: str = "CampaignEngine"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)


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


def _section(cls, raw: dict[str, Any], current):
    """Build a config dataclass from a raw section, keeping defaults for missing keys."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**{**current.__dict__, **known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    if config_path is None:
        config_path = os.environ.get(
            "CAMPAIGN_ENGINE_CONFIG",
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

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)

        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"], settings.queue)

        if "email" in raw:
            settings.email = _section(EmailConfig, raw["email"], settings.email)

        if "engine" in raw:
            settings.engine = _section(EngineConfig, raw["engine"], settings.engine)

        if "recovery" in raw:
            settings.recovery = _section(RecoveryConfig, raw["recovery"], settings.recovery)

    return settings
