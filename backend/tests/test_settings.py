"""Tests for application settings."""
import importlib


def test_database_url_respects_env_var(monkeypatch):
    """DATABASE_URL uses the env var when set."""
    monkeypatch.setenv("DATABASE_URL", "sqlite:////var/data/progress.db")

    import backend.app.settings as settings
    importlib.reload(settings)

    assert settings.DATABASE_URL == "sqlite:////var/data/progress.db"


def test_database_url_defaults_to_local_sqlite(monkeypatch):
    """DATABASE_URL falls back to repo-root progress.db when env var is unset."""
    monkeypatch.delenv("DATABASE_URL", raising=False)

    import backend.app.settings as settings
    importlib.reload(settings)

    assert settings.DATABASE_URL.startswith("sqlite:///")
    assert settings.DATABASE_URL.endswith("progress.db")


def test_sessionizer_defaults(monkeypatch):
    for name in ("GAP_THRESHOLD_MS", "MIN_SESSION_MS", "FUTURE_SKEW_MS", "SCHEDULER_ENABLED"):
        monkeypatch.delenv(name, raising=False)

    import backend.app.settings as settings
    importlib.reload(settings)

    assert settings.GAP_THRESHOLD_MS == 120_000
    assert settings.MIN_SESSION_MS == 30_000
    assert settings.FUTURE_SKEW_MS == 300_000
    assert settings.SCHEDULER_ENABLED is False


def test_scheduler_enabled_flag(monkeypatch):
    monkeypatch.setenv("SCHEDULER_ENABLED", "1")

    import backend.app.settings as settings
    importlib.reload(settings)

    assert settings.SCHEDULER_ENABLED is True
    monkeypatch.delenv("SCHEDULER_ENABLED")
    importlib.reload(settings)


def test_log_level_is_normalized(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")

    import backend.app.settings as settings
    importlib.reload(settings)

    assert settings.LOG_LEVEL == "DEBUG"
    monkeypatch.delenv("LOG_LEVEL")
    importlib.reload(settings)
    assert settings.LOG_LEVEL == "INFO"
