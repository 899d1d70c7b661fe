from __future__ import annotations

import pytest

from counsel_orchestrator.config.settings import Settings


def test_environment_overrides_with_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COUNSEL_MAX_TURNS", "7")
    monkeypatch.setenv("COUNSEL_PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("COUNSEL_IMBIB_PORT", "30000")

    settings = Settings(_env_file=None)

    assert settings.max_turns == 7
    assert settings.persistence_enabled is False
    assert settings.sibling_base_urls()["imbib"] == "http://127.0.0.1:30000"
    assert settings.sibling_base_urls()["implore"] == "http://127.0.0.1:23124"


def test_engine_config_projection() -> None:
    settings = Settings(_env_file=None, model_id="", system_prompt="", event_log_cap=50)

    config = settings.engine_config()

    assert config.model_id is None
    assert config.system_prompt is None
    assert config.event_log_cap == 50
    assert config.max_turns == 40


def test_fallback_environment_names(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("COUNSEL_DATABASE_URL", raising=False)
    monkeypatch.setenv("ORCHESTRATOR_DATABASE_URL", "postgresql://u:p@localhost:5432/counsel")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

    settings = Settings(_env_file=None, openai_api_key="")

    assert settings.resolved_database_url() == "postgresql://u:p@localhost:5432/counsel"
    assert settings.resolved_openai_api_key() == "sk-env"
