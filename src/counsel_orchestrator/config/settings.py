"""Application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


@dataclass(frozen=True)
class EngineConfig:
    """Immutable knobs handed to the orchestrator and agent loop at construction."""

    model_id: str | None = None
    max_turns: int = 40
    max_tokens: int = 4096
    persistence_enabled: bool = True
    system_prompt: str | None = None
    event_log_cap: int = 200
    max_tracked_event_logs: int = 1000
    tool_input_summary_chars: int = 200
    tool_output_summary_chars: int = 200
    result_output_chars: int = 500
    result_max_tool_executions: int = 100
    await_timeout_s: float = 300.0
    callback_timeout_s: float = 10.0
    progress_interval_s: float = 30.0
    progress_tool_threshold: int = 5


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "counsel-orchestrator"
    app_env: str = "dev"

    model_id: str = "gpt-4o-mini"
    max_turns: int = Field(default=40, ge=1)
    max_tokens: int = Field(default=4096, ge=1)
    persistence_enabled: bool = True
    system_prompt: str = ""

    event_log_cap: int = Field(default=200, ge=1)
    max_tracked_event_logs: int = Field(default=1000, ge=1)
    tool_input_summary_chars: int = Field(default=200, ge=1)
    tool_output_summary_chars: int = Field(default=200, ge=1)
    result_output_chars: int = Field(default=500, ge=1)
    result_max_tool_executions: int = Field(default=100, ge=0)
    await_timeout_s: float = Field(default=300.0, gt=0.0)
    callback_timeout_s: float = Field(default=10.0, gt=0.0)
    progress_interval_s: float = Field(default=30.0, ge=0.0)
    progress_tool_threshold: int = Field(default=5, ge=1)
    progress_webhook_url: str = ""

    database_url: str = ""

    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.5, ge=0.0)
    openai_api_key: str = ""

    tool_timeout_s: float = Field(default=30.0, ge=0.01)
    sibling_host: str = "127.0.0.1"
    imbib_port: int = 23120
    imprint_port: int = 23121
    impart_port: int = 23122
    implore_port: int = 23124

    model_config = SettingsConfigDict(
        env_prefix="COUNSEL_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def sibling_base_urls(self) -> dict[str, str]:
        return {
            "imbib": f"http://{self.sibling_host}:{self.imbib_port}",
            "imprint": f"http://{self.sibling_host}:{self.imprint_port}",
            "impart": f"http://{self.sibling_host}:{self.impart_port}",
            "implore": f"http://{self.sibling_host}:{self.implore_port}",
        }

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            model_id=self.model_id or None,
            max_turns=self.max_turns,
            max_tokens=self.max_tokens,
            persistence_enabled=self.persistence_enabled,
            system_prompt=self.system_prompt or None,
            event_log_cap=self.event_log_cap,
            max_tracked_event_logs=self.max_tracked_event_logs,
            tool_input_summary_chars=self.tool_input_summary_chars,
            tool_output_summary_chars=self.tool_output_summary_chars,
            result_output_chars=self.result_output_chars,
            result_max_tool_executions=self.result_max_tool_executions,
            await_timeout_s=self.await_timeout_s,
            callback_timeout_s=self.callback_timeout_s,
            progress_interval_s=self.progress_interval_s,
            progress_tool_threshold=self.progress_tool_threshold,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
