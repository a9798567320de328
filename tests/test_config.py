from pathlib import Path

import pytest

from kidvolts.config import DEFAULT_DECAY_CRON, Settings


def test_settings_from_env_defaults() -> None:
    settings = Settings.from_env({})
    assert settings.database_url == "sqlite:///kidvolts.db"
    assert settings.save_attempts == 3
    assert settings.decay_cron == DEFAULT_DECAY_CRON
    assert settings.scheduler_enabled
    assert settings.rules_file is None


def test_settings_from_env_overrides(tmp_path) -> None:
    settings = Settings.from_env(
        {
            "KIDVOLTS_SQLITE": str(tmp_path / "family.db"),
            "KIDVOLTS_SAVE_ATTEMPTS": "5",
            "KIDVOLTS_DECAY_RATE": "0.25",
            "KIDVOLTS_REPLENISH_CRON": "30 6 * * mon",
            "KIDVOLTS_SCHEDULER_POLL_SECONDS": "2.5",
            "KIDVOLTS_SCHEDULER_ENABLED": "off",
            "KIDVOLTS_RULES_FILE": str(tmp_path / "rules.json"),
        }
    )
    assert settings.database_url == f"sqlite:///{tmp_path / 'family.db'}"
    assert settings.save_attempts == 5
    assert settings.decay_rate == "0.25"
    assert settings.replenish_cron == "30 6 * * mon"
    assert settings.scheduler_poll_seconds == 2.5
    assert not settings.scheduler_enabled
    assert settings.rules_file == Path(tmp_path / "rules.json")


def test_database_url_wins_over_sqlite_file() -> None:
    settings = Settings.from_env({"KIDVOLTS_DATABASE_URL": "sqlite://", "KIDVOLTS_SQLITE": "ignored.db"})
    assert settings.database_url == "sqlite://"


def test_settings_validation() -> None:
    with pytest.raises(ValueError):
        Settings(save_attempts=0)
    with pytest.raises(ValueError):
        Settings(scheduler_poll_seconds=0)
