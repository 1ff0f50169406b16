"""
Context orchestrator settings.
Values come from environment variables prefixed with ``CONTEXT_`` or a local .env file.
"""

from functools import lru_cache
from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the context orchestrator"""

    model_config = SettingsConfigDict(
        env_prefix="CONTEXT_",
        env_file=".env",
        extra="ignore",
    )

    # Service
    service_name: str = "context-orchestrator"
    environment: str = "development"
    version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"

    # Context store
    store_backend: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite+aiosqlite:///./context_store.db"
    database_echo: bool = False
    history_load_limit: Optional[int] = Field(None, ge=1)

    # Scheduling
    max_iterations: int = Field(10, ge=1)
    agent_timeout_seconds: Optional[float] = Field(None, gt=0)
    concurrent_agents: bool = False
    agent_factory: Optional[str] = None  # "package.module:callable" returning agents

    # Sessions
    session_ttl_seconds: int = Field(3600, ge=1)
    session_sweep_interval_seconds: int = Field(60, ge=1)

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @property
    def uses_durable_store(self) -> bool:
        return self.store_backend == "sql"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
