"""
Configuration loader for the Turbozap dispatch service.
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
class PersistenceConfig:
    data_dir: str = "./data"
    document_key: str = "queues"
    debounce_delay: float = 2.0          # seconds of quiet before a debounced write
    auto_save_interval: float = 30.0     # seconds between unconditional snapshots
    backup_keep: int = 5                 # backups retained per key by autosave cleanup


@dataclass
class WorkerConfig:
    execution_interval: float = 60.0     # pacing between two dispatches on one session
    idle_poll_interval: float = 5.0      # wait when a session queue has nothing pending
    dispatch_timeout: float = 30.0


@dataclass
class GatewayConfig:
    base_url: str = "http://localhost:3000"
    api_key: str = ""
    api_key_header: str = "X-Api-Key"


@dataclass
class Settings:
    app_name: str = "Turbozap"
    debug: bool = False
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)


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


def _resolved(value: Any) -> str:
    """Empty string for missing values and placeholders left unsubstituted."""
    if not value or not isinstance(value, str) or value.startswith("${"):
        return ""
    return value


def _apply_env_overrides(settings: Settings) -> None:
    """Plain environment variables win over the YAML file."""
    env = os.environ
    if env.get("DATA_DIR"):
        settings.persistence.data_dir = env["DATA_DIR"]
    if env.get("AUTO_SAVE_INTERVAL"):
        settings.persistence.auto_save_interval = float(env["AUTO_SAVE_INTERVAL"])
    if env.get("EXECUTION_INTERVAL"):
        settings.worker.execution_interval = float(env["EXECUTION_INTERVAL"])
    if env.get("WAHA_BASE_URL"):
        settings.gateway.base_url = env["WAHA_BASE_URL"]
    if env.get("WAHA_API_KEY"):
        settings.gateway.api_key = env["WAHA_API_KEY"]
    if env.get("CORS_ORIGIN"):
        settings.cors_origins = [o.strip() for o in env["CORS_ORIGIN"].split(",") if o.strip()]


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "TURBOZAP_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.cors_origins = raw.get("cors_origins", settings.cors_origins)

        if "persistence" in raw:
            p = raw["persistence"]
            settings.persistence = PersistenceConfig(
                data_dir=p.get("data_dir", "./data"),
                document_key=p.get("document_key", "queues"),
                debounce_delay=float(p.get("debounce_delay", 2.0)),
                auto_save_interval=float(p.get("auto_save_interval", 30.0)),
                backup_keep=int(p.get("backup_keep", 5)),
            )

        if "worker" in raw:
            w = raw["worker"]
            settings.worker = WorkerConfig(
                execution_interval=float(w.get("execution_interval", 60.0)),
                idle_poll_interval=float(w.get("idle_poll_interval", 5.0)),
                dispatch_timeout=float(w.get("dispatch_timeout", 30.0)),
            )

        if "gateway" in raw:
            g = raw["gateway"]
            settings.gateway = GatewayConfig(
                base_url=_resolved(g.get("base_url")) or settings.gateway.base_url,
                api_key=_resolved(g.get("api_key")),
                api_key_header=g.get("api_key_header", "X-Api-Key"),
            )

    _apply_env_overrides(settings)

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
