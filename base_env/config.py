"""Settings resolution: explicit value → env var → config table → default."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from base_env.data.store import DataStore


_DEFAULT_ENV_DIR = os.path.join(
    str(Path.home()), "Dropbox", "Environments", "base-env"
)

# Stored key → environment variable(s), first set one wins.
_ENV_VARS: dict[str, tuple[str, ...]] = {
    "env_dir": ("BASE_ENV_DIR",),
    "python_series": ("BASE_ENV_PYTHON_SERIES",),
    "adaptive": ("BASE_ENV_ADAPTIVE", "ENABLE_ADAPTIVE"),
    "network_timeout": ("BASE_ENV_NETWORK_TIMEOUT",),
    "probe_timeout": ("BASE_ENV_PROBE_TIMEOUT",),
    "cooldown_days": ("BASE_ENV_COOLDOWN_DAYS",),
    "snapshot_threshold_mb": ("BASE_ENV_SNAPSHOT_THRESHOLD_MB",),
    "snapshot_retention": ("BASE_ENV_SNAPSHOT_RETENTION",),
    "max_attempts": ("BASE_ENV_MAX_ATTEMPTS",),
}

VALID_KEYS = frozenset(_ENV_VARS)

_TRUE = {"1", "true", "on", "yes"}
_FALSE = {"0", "false", "off", "no"}


@dataclass
class Settings:
    env_dir: Path = field(default_factory=lambda: Path(_DEFAULT_ENV_DIR))
    python_series: tuple[str, ...] = ("3.11", "3.12", "3.13")
    adaptive: bool = False
    network_timeout: float = 5.0
    probe_timeout: float = 60.0
    cooldown_days: int = 7
    snapshot_threshold_mb: int = 500
    snapshot_retention: int = 2
    max_attempts: int = 3

    @property
    def venv_dir(self) -> Path:
        return self.env_dir / ".venv"

    @property
    def state_dir(self) -> Path:
        return self.env_dir / ".base-env"

    @property
    def snapshot_dir(self) -> Path:
        return self.state_dir / "snapshots"

    @property
    def lock_dir(self) -> Path:
        return self.env_dir / ".base-env.lock"

    @property
    def requirements_in(self) -> Path:
        return self.env_dir / "requirements.in"

    @property
    def lock_file(self) -> Path:
        return self.env_dir / "requirements.txt"

    @property
    def freeze_file(self) -> Path:
        return self.env_dir / "requirements.lock.txt"

    @property
    def merged_in(self) -> Path:
        return self.state_dir / "requirements.merged.in"

    @property
    def resolver_constraints(self) -> Path:
        return self.state_dir / "resolver-constraints.txt"


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"Not a boolean value: {value!r}")


def validate(key: str, value: str) -> None:
    """Raise ValueError when ``value`` is not acceptable for ``key``."""
    if key not in VALID_KEYS:
        raise ValueError(
            f"Unknown config key: {key}. Valid keys: {', '.join(sorted(VALID_KEYS))}"
        )
    _coerce(key, value)


def _coerce(key: str, value: str):
    if key == "env_dir":
        return Path(value).expanduser()
    if key == "python_series":
        series = tuple(s.strip() for s in value.split(",") if s.strip())
        if not series:
            raise ValueError("python_series must list at least one series")
        return series
    if key == "adaptive":
        return parse_bool(value)
    if key in ("network_timeout", "probe_timeout"):
        number = float(value)
        if number <= 0:
            raise ValueError(f"{key} must be positive")
        return number
    number = int(value)
    if number < 1:
        raise ValueError(f"{key} must be at least 1")
    return number


def _lookup(key: str, store: Optional[DataStore]) -> Optional[str]:
    for var in _ENV_VARS[key]:
        env_value = os.environ.get(var)
        if env_value:
            return env_value
    if store is not None:
        return store.get_config(key)
    return None


def resolve_settings(store: Optional[DataStore] = None, **overrides) -> Settings:
    """Build Settings from overrides, environment and stored config."""
    settings = Settings()
    for key in VALID_KEYS:
        if overrides.get(key) is not None:
            setattr(settings, key, overrides[key])
            continue
        raw = _lookup(key, store)
        if raw is None:
            continue
        setattr(settings, key, _coerce(key, raw))
    return settings
