"""Configuration constants for KidVolts."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

SQLITE_FILE_NAME = os.environ.get("KIDVOLTS_SQLITE", "kidvolts.db")
DATABASE_URL = os.environ.get("KIDVOLTS_DATABASE_URL", f"sqlite:///{SQLITE_FILE_NAME}")
DEFAULT_SAVE_ATTEMPTS = 3
DEFAULT_DECAY_RATE = "0.5"
# Every Tuesday at 00:00.
DEFAULT_REPLENISH_CRON = "0 0 * * 2"
DEFAULT_DECAY_CRON = "0 0 * * 2"
DEFAULT_SCHEDULER_POLL_SECONDS = 60.0
ACTOR_HEADER = "X-Actor-Id"
COLLECTIONS: Tuple[str, ...] = ("users", "missions", "history", "bazaar")
RULE_ACTIONS: Tuple[str, ...] = ("list", "view", "create", "update")

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass(frozen=True, slots=True)
class Settings:
    """Runtime settings resolved from the environment."""

    database_url: str = DATABASE_URL
    save_attempts: int = DEFAULT_SAVE_ATTEMPTS
    decay_rate: str = DEFAULT_DECAY_RATE
    replenish_cron: str = DEFAULT_REPLENISH_CRON
    decay_cron: str = DEFAULT_DECAY_CRON
    scheduler_poll_seconds: float = DEFAULT_SCHEDULER_POLL_SECONDS
    scheduler_enabled: bool = True
    rules_file: Optional[Path] = None
    log_path: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.save_attempts < 1:
            raise ValueError("save_attempts must be at least 1.")
        if self.scheduler_poll_seconds <= 0:
            raise ValueError("scheduler_poll_seconds must be positive.")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        sqlite_file = env.get("KIDVOLTS_SQLITE", "kidvolts.db")
        rules_file = env.get("KIDVOLTS_RULES_FILE")
        log_path = env.get("KIDVOLTS_LOG_PATH")
        return cls(
            database_url=env.get("KIDVOLTS_DATABASE_URL", f"sqlite:///{sqlite_file}"),
            save_attempts=int(env.get("KIDVOLTS_SAVE_ATTEMPTS", DEFAULT_SAVE_ATTEMPTS)),
            decay_rate=env.get("KIDVOLTS_DECAY_RATE", DEFAULT_DECAY_RATE),
            replenish_cron=env.get("KIDVOLTS_REPLENISH_CRON", DEFAULT_REPLENISH_CRON),
            decay_cron=env.get("KIDVOLTS_DECAY_CRON", DEFAULT_DECAY_CRON),
            scheduler_poll_seconds=float(
                env.get("KIDVOLTS_SCHEDULER_POLL_SECONDS", DEFAULT_SCHEDULER_POLL_SECONDS)
            ),
            scheduler_enabled=_env_bool(env.get("KIDVOLTS_SCHEDULER_ENABLED"), True),
            rules_file=Path(rules_file) if rules_file else None,
            log_path=Path(log_path) if log_path else None,
        )


__all__ = [
    "SQLITE_FILE_NAME",
    "DATABASE_URL",
    "DEFAULT_SAVE_ATTEMPTS",
    "DEFAULT_DECAY_RATE",
    "DEFAULT_REPLENISH_CRON",
    "DEFAULT_DECAY_CRON",
    "DEFAULT_SCHEDULER_POLL_SECONDS",
    "ACTOR_HEADER",
    "COLLECTIONS",
    "RULE_ACTIONS",
    "Settings",
]
