"""Runtime configuration."""

from counsel_orchestrator.config.settings import EngineConfig, Settings, get_settings

__all__ = ["EngineConfig", "Settings", "get_settings"]
