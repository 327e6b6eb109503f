"""
Configuration loader for the FlowPilot engine.
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
class EngineConfig:
    max_steps_per_event: int = 50
    session_timeout_minutes: int = 1440
    flow_response_timeout_minutes: int = 10
    window_hours: int = 24
    strict_dead_ends: bool = True          # False: a message node with no edge completes the flow
    max_dynamic_buttons: int = 3
    list_page_size: int = 8
    external_call_timeout_seconds: float = 30.0
    test_sessions_retained: int = 200    # test sessions whose event log stays replayable


@dataclass
class WhatsAppConfig:
    api_base_url: str = "https://graph.facebook.com"
    api_version: str = "v21.0"
    phone_number_id: str = ""
    business_account_id: str = ""
    access_token: str = ""
    verify_token: str = ""
    default_template: str = "hello_world"      # sent when the 24h window is closed
    template_language: str = "en"
    rate_per_second: float = 20.0
    burst: int = 40


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flowpilot.db"              # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend
    echo: bool = False


@dataclass
class SweeperConfig:
    enabled: bool = True
    interval_seconds: int = 60          # seconds between stale-context scans
    batch_size: int = 100               # contexts expired per scan, one at a time


@dataclass
class Settings:
    app_name: str = "FlowPilot"
    debug: bool = False
    timezone: str = "UTC"
    engine: EngineConfig = field(default_factory=EngineConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)


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


def merge_section(cls, raw: Optional[dict], defaults):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    if not raw:
        return defaults
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**{**defaults.__dict__, **known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWPILOT_CONFIG",
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

        settings.engine = merge_section(EngineConfig, raw.get("engine"), settings.engine)
        settings.whatsapp = merge_section(WhatsAppConfig, raw.get("whatsapp"), settings.whatsapp)
        settings.database = merge_section(DatabaseConfig, raw.get("database"), settings.database)
        settings.sweeper = merge_section(SweeperConfig, raw.get("sweeper"), settings.sweeper)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
