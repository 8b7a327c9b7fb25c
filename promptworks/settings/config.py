# promptworks/settings/config.py  (Pydantic v2)
from typing import List, Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    # ---------- Runtime ----------
    # "development" exposes /docs, "production" hides it
    APP_ENV: Literal["development", "production", "test"] = Field(
        default="development",
        env=["APP_ENV", "PROMPTWORKS_ENV"],
    )
    PORT: int = Field(default=8000, env=["PORT"])
    LOG_LEVEL: str = Field(default="INFO", env=["LOG_LEVEL"])
    CORS_ORIGINS: List[str] = Field(default=["*"], env=["CORS_ORIGINS"])

    # ---------- Generation provider (Ollama) ----------
    OLLAMA_BASE_URL: str = Field(default="http://host.docker.internal:11434", env=["OLLAMA_BASE_URL"])
    OLLAMA_MODEL: str = Field(default="llama3.1:8b", env=["OLLAMA_MODEL"])
    LLM_TIMEOUT_SECONDS: float = Field(default=120.0, env=["LLM_TIMEOUT_SECONDS"])

    # ---------- Book creation ----------
    CHAPTER_CONCURRENCY_LIMIT: int = Field(default=5, env=["CHAPTER_CONCURRENCY_LIMIT"])
    MAX_ACTIVE_TASKS: int = Field(default=3, env=["MAX_ACTIVE_TASKS"])

    # ---------- Request logging ----------
    SLOW_REQUEST_MS: int = Field(default=3000, env=["SLOW_REQUEST_MS"])
    AUDIT_API_CALLS: bool = Field(default=True, env=["AUDIT_API_CALLS"])

    # ---------- Seed admin ----------
    ADMIN_EMAIL: Optional[str] = Field(default=None, env=["ADMIN_EMAIL"])
    ADMIN_PASSWORD: Optional[str] = Field(default=None, env=["ADMIN_PASSWORD"])
    ADMIN_USERNAME: str = Field(default="admin", env=["ADMIN_USERNAME"])

    # ---------- pydantic-settings config ----------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # allow lower/upper env names
        extra="ignore",
    )

    @property
    def docs_enabled(self) -> bool:
        return self.APP_ENV != "production"


settings = Settings()
