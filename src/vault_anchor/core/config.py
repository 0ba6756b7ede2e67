# Ledger Settings - Environment-driven configuration
#
# All knobs are read from environment variables (optionally from a .env
# file in the working directory).  Defaults keep the service usable with
# no configuration at all: in-memory ledger, in-memory operation store.

import os
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

DEFAULT_SUBMIT_TIMEOUT = 30.0       # seconds to wait for confirmation
DEFAULT_POLL_INTERVAL = 1.0         # seconds between status polls
DEFAULT_MAX_RETRIES = 3             # network attempts per submit
DEFAULT_HISTORY_LIMIT = 100         # per-user sliding window
DEFAULT_CACHE_MAX_AGE_HOURS = 24.0  # operation cache eviction age
DEFAULT_EVICTION_INTERVAL = 300.0   # sweeper period, seconds

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass
class LedgerSettings:
    """Runtime configuration for the ledger audit service."""

    enabled: bool = True
    gateway_url: str = ""
    api_key: str = field(default="", repr=False)
    submit_timeout: float = DEFAULT_SUBMIT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_retries: int = DEFAULT_MAX_RETRIES
    history_limit: int = DEFAULT_HISTORY_LIMIT
    cache_max_age_hours: float = DEFAULT_CACHE_MAX_AGE_HOURS
    eviction_interval: float = DEFAULT_EVICTION_INTERVAL
    db_path: Optional[Path] = None
    explorer_url: str = ""

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        if self.submit_timeout <= 0:
            raise ValueError("submit_timeout must be positive")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.eviction_interval <= 0:
            raise ValueError("eviction_interval must be positive")

    @property
    def cache_max_age(self) -> timedelta:
        return timedelta(hours=self.cache_max_age_hours)

    @classmethod
    def from_env(cls, dotenv_path: Optional[Path] = None) -> "LedgerSettings":
        """Build settings from ``LEDGER_*`` environment variables.

        A ``.env`` file is loaded first (without overriding variables that
        are already set in the process environment).
        """
        load_dotenv(dotenv_path=dotenv_path, override=False)

        db_path = os.environ.get("LEDGER_DB_PATH", "").strip()
        return cls(
            enabled=_env_bool("LEDGER_ENABLED", True),
            gateway_url=os.environ.get("LEDGER_GATEWAY_URL", "").strip(),
            api_key=os.environ.get("LEDGER_API_KEY", "").strip(),
            submit_timeout=_env_float("LEDGER_SUBMIT_TIMEOUT", DEFAULT_SUBMIT_TIMEOUT),
            poll_interval=_env_float("LEDGER_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            max_retries=_env_int("LEDGER_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            history_limit=_env_int("LEDGER_HISTORY_LIMIT", DEFAULT_HISTORY_LIMIT),
            cache_max_age_hours=_env_float(
                "LEDGER_CACHE_MAX_AGE_HOURS", DEFAULT_CACHE_MAX_AGE_HOURS
            ),
            eviction_interval=_env_float(
                "LEDGER_EVICTION_INTERVAL", DEFAULT_EVICTION_INTERVAL
            ),
            db_path=Path(db_path) if db_path else None,
            explorer_url=os.environ.get("LEDGER_EXPLORER_URL", "").strip(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Settings for status display (API key redacted)."""
        data = asdict(self)
        data["api_key"] = "***" if self.api_key else ""
        data["db_path"] = str(self.db_path) if self.db_path else None
        return data
