# workshop/settings/config.py  (Pydantic v2)
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    # ---------- Local store ----------
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./workshop.db")
    DATABASE_ECHO: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")
    # Hard capacity for the SQLite file, in pages. Unset = unlimited.
    SQLITE_MAX_PAGE_COUNT: Optional[int] = Field(default=None, ge=1)

    # ---------- Workshop defaults ----------
    DEFAULT_PROJECT_NAME: str = Field(default="Untitled Project")
    MAX_PERSONA_REFERENCES: int = Field(default=4, ge=1)
    MAX_OUTPUTS: int = Field(default=4, ge=1)

    # ---------- pydantic-settings config ----------
    model_config = SettingsConfigDict(
        env_prefix="WORKSHOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # allow lower/upper env names
        extra="ignore",
    )


settings = Settings()
