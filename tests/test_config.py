"""Tests for configuration validation."""

from datetime import timedelta

import pytest

from qcdispatch.config import Config, _delays


def test_retry_delays_parsing():
    """Retry delays are comma-separated seconds."""
    assert _delays("5, 30,120") == (
        timedelta(seconds=5),
        timedelta(seconds=30),
        timedelta(minutes=2),
    )
    assert _delays("") == ()


def test_validate(monkeypatch, tmp_path):
    """A token is required and the database directory is created."""
    db_path = tmp_path / "data" / "qcdispatch.db"
    monkeypatch.setattr(Config, "TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setattr(Config, "ADMIN_CHAT_ID", "-100123")
    monkeypatch.setattr(Config, "DATABASE_PATH", db_path)
    monkeypatch.setattr(Config, "DETECTION_RULES_PATH", "")

    Config.validate()
    assert db_path.parent.is_dir()

    monkeypatch.setattr(Config, "TELEGRAM_BOT_TOKEN", "")
    with pytest.raises(ValueError):
        Config.validate()


@pytest.mark.parametrize(
    "name, value",
    [
        ("ADMIN_CHAT_ID", "admins"),
        ("RETRY_DELAYS", ()),
        ("MAX_RETRIES", -1),
        ("DUE_WINDOW_MINUTES", 0),
        ("DETECTION_RULES_PATH", "/nonexistent/rules.json"),
    ],
)
def test_validate_rejects(monkeypatch, tmp_path, name, value):
    """Invalid settings are reported before the worker starts."""
    monkeypatch.setattr(Config, "TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setattr(Config, "DATABASE_PATH", tmp_path / "qcdispatch.db")
    monkeypatch.setattr(Config, "ADMIN_CHAT_ID", "")
    monkeypatch.setattr(Config, "DETECTION_RULES_PATH", "")
    monkeypatch.setattr(Config, name, value)

    with pytest.raises(ValueError):
        Config.validate()
