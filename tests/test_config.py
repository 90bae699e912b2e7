from __future__ import annotations

from pathlib import Path

from core.config import Settings


def test_defaults(monkeypatch) -> None:
    for name in (
        "COMMANDPILOT_DATA_DIR",
        "COMMANDPILOT_STEP_TIMEOUT",
        "COMMANDPILOT_ENABLE_BROWSER",
        "COMMANDPILOT_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.data_dir == Path.home() / ".commandpilot"
    assert settings.orchestrator.step_timeout_seconds == 30.0
    assert settings.orchestrator.search_limit == 10
    assert settings.log_level == "INFO"
    assert not settings.integrations.browser_enabled


def test_environment_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("COMMANDPILOT_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("COMMANDPILOT_STEP_TIMEOUT", "2.5")
    monkeypatch.setenv("COMMANDPILOT_MAX_PARALLEL", "8")
    monkeypatch.setenv("COMMANDPILOT_ENABLE_BROWSER", "true")
    monkeypatch.setenv("COMMANDPILOT_ENABLE_WORKFLOW", "0")

    settings = Settings.from_env()

    assert settings.knowledge_db_path == tmp_path / "knowledge.db"
    assert settings.marathon_db_path == tmp_path / "marathon.db"
    assert settings.orchestrator.step_timeout_seconds == 2.5
    assert settings.orchestrator.max_parallel_dispatch == 8
    assert settings.integrations.browser_enabled
    assert not settings.integrations.workflow_enabled


def test_explicit_data_dir_wins(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("COMMANDPILOT_DATA_DIR", "/somewhere/else")

    assert Settings.from_env(data_dir=tmp_path).data_dir == tmp_path


def test_marathon_settings(monkeypatch) -> None:
    monkeypatch.delenv("COMMANDPILOT_AUTO_SAVE_INTERVAL", raising=False)
    monkeypatch.setenv("COMMANDPILOT_MAX_SESSION_DURATION", "90")

    settings = Settings.from_env()

    assert settings.marathon.auto_save_interval_seconds == 300.0
    assert settings.marathon.max_session_duration_seconds == 90.0

    monkeypatch.setenv("COMMANDPILOT_AUTO_SAVE_INTERVAL", "0")
    assert Settings.from_env().marathon.auto_save_interval_seconds == 0.0
