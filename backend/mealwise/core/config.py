"""
Configuration module for the Mealwise API.
Loads settings from environment variables.
"""
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


PACKAGE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    log_level: str = "INFO"

    # Database (use relative path or set via environment variable)
    database_url: str = "sqlite:///./mealwise.db"

    # Data paths (bundled CSV by default)
    nutrition_data_path: str = str(PACKAGE_DIR / "data" / "nutrition_data.csv")

    # LLM Configuration
    llm_provider: str = "ollama"
    llm_base_url: str = "http://localhost:11434"
    llm_model: str = "llama3:latest"

    # VLM Configuration
    vlm_provider: str = "ollama"
    vlm_base_url: str = "http://localhost:11434"
    vlm_model: str = "qwen3-vl:latest"

    # Orchestration
    # "memory" keeps context in-process, "database" persists it with a TTL
    context_store: str = "memory"
    context_ttl_minutes: int = 30
    context_cleanup_interval_seconds: int = 600
    classifier_timeout_seconds: float = 60.0
    tool_timeout_seconds: float = 60.0
    image_fetch_timeout_seconds: float = 10.0
    image_max_bytes: int = 10 * 1024 * 1024
    history_window: int = 5
    max_tool_retries: int = 1


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
