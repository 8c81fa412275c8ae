"""Tests for environment-driven settings."""

from acp_sessions import Settings


def test_defaults() -> None:
    settings = Settings.from_env({})
    assert settings.max_cached_sessions == 20
    assert settings.drain_timeout == 2.0


def test_overrides_from_environment() -> None:
    settings = Settings.from_env(
        {"ACP_SESSIONS_MAX_CACHED_SESSIONS": "5", "ACP_SESSIONS_CANCEL_TIMEOUT": "1.5"}
    )
    assert settings.max_cached_sessions == 5
    assert settings.cancel_timeout == 1.5


def test_invalid_values_ignored() -> None:
    settings = Settings.from_env({"ACP_SESSIONS_EVENT_QUEUE_SIZE": "lots"})
    assert settings.event_queue_size == Settings().event_queue_size
