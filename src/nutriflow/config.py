"""
NutriFlow - Configuration and settings.

One settings object for the onboarding engine: LLM parsing, transcription,
progress persistence and autosave cadence. Loaded from the environment and
an optional .env file.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class NutriFlowSettings(BaseSettings):
    """
    Settings shared by the CLI, the API router and the onboarding engine.

    Every external service is optional: without an OpenAI key the parsing
    gateway degrades to manual entry, without a transcription URL voice
    capture is reported as unsupported.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OpenAI (response parsing)
    openai_api_key: str | None = None
    parsing_model: str = "gpt-4.1-mini"
    parsing_temperature: float = 0.3

    # Which backend the parsing gateway talks to
    parsing_backend: Literal["llm", "http"] = "llm"
    parsing_service_url: str | None = None

    # Transcription service
    transcription_api_url: str | None = None
    transcription_api_key: str | None = None
    transcription_timeout_seconds: float = 30.0

    # Measurement parse acceptance threshold
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)

    # Progress persistence
    progress_backend: Literal["file", "memory", "supabase"] = "file"
    progress_path: Path = Path(".nutriflow/progress.json")
    responses_path: Path = Path(".nutriflow/responses.json")
    progress_storage_key: str = "onboarding_progress"
    progress_schema_version: str = "1.0.0"
    autosave_interval_seconds: float = Field(default=1.0, gt=0)

    # API: open onboarding sessions kept in memory; least recently used are closed first
    api_max_sessions: int = Field(default=500, gt=0)

    # Supabase (only for progress_backend="supabase")
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None

    # Application
    nutriflow_env: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # NUTRIFLOW_LOG_PARSES=1 - write every parsing-gateway call to parse_logs/
    nutriflow_log_parses: bool = False

    @property
    def is_development(self) -> bool:
        return self.nutriflow_env == "development"

    @property
    def is_production(self) -> bool:
        return self.nutriflow_env == "production"

    @property
    def llm_enabled(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def transcription_enabled(self) -> bool:
        return bool(self.transcription_api_url)


@lru_cache
def get_settings() -> NutriFlowSettings:
    """Get cached settings instance."""
    return NutriFlowSettings()


class _SettingsProxy:
    """Lazy proxy for settings to avoid loading .env at import time."""

    _instance: NutriFlowSettings | None = None

    def __getattr__(self, name: str):
        if self._instance is None:
            self._instance = get_settings()
        return getattr(self._instance, name)


settings = _SettingsProxy()
