"""Configuration — OrparConfig loaded from orpar.yaml.

Precedence: environment variables > orpar.yaml > dataclass defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path

import yaml

CONFIG_FILE = "orpar.yaml"
TEST_ENVIRONMENT = "test"


@dataclass
class OrparConfig:
    """ORPAR tool configuration."""
    history_limit: int = 50           # Max phase history entries per key
    content_max_chars: int = 500      # Truncation for stored history content
    recent_history: int = 5           # Entries returned by orpar_status

    # Identity handling when the caller context has no agent/channel
    fallback_identity: str = "unknown"
    require_identity: bool = False    # True = reject instead of falling back

    task_complete_tool: str = "task_complete"

    # Outward events: bus | webhook | null
    publisher: str = "bus"
    webhook_url: str = ""             # or ORPAR_WEBHOOK_URL env var
    webhook_timeout: float = 5.0

    environment: str = "production"   # or ORPAR_ENV env var; "test" skips listener registration

    @property
    def is_test(self) -> bool:
        return self.environment == TEST_ENVIRONMENT


def load_config(config_path: str | Path | None = None) -> OrparConfig:
    """Load config from orpar.yaml, then apply environment overrides."""
    raw: dict = {}
    if config_path is None:
        config_path = Path.cwd() / CONFIG_FILE

    config_path = Path(config_path)
    if config_path.exists():
        with open(config_path) as f:
            try:
                loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"{config_path}: invalid YAML: {e}") from e
        if not isinstance(loaded, dict):
            raise ValueError(f"{config_path}: expected a mapping, got {type(loaded).__name__}")
        raw = loaded

    known = {f.name: f for f in fields(OrparConfig)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ValueError(f"{config_path}: unknown config keys: {', '.join(unknown)}")

    defaults = OrparConfig()
    values = {}
    for name in known:
        default = getattr(defaults, name)
        value = raw.get(name, default)
        values[name] = _coerce(name, value, default)

    config = OrparConfig(**values)
    return apply_env_overrides(config)


def apply_env_overrides(config: OrparConfig) -> OrparConfig:
    env = os.environ.get("ORPAR_ENV", "")
    if env:
        config.environment = env
    webhook = os.environ.get("ORPAR_WEBHOOK_URL", "")
    if webhook:
        config.webhook_url = webhook
    return config


def _coerce(name: str, value: object, default: object) -> object:
    """Check a YAML value against the default's type."""
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValueError(f"{name}: expected true/false, got {value!r}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError(f"{name}: expected a positive integer, got {value!r}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValueError(f"{name}: expected a positive number, got {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"{name}: expected a string, got {value!r}")
    return value
