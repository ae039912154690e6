import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

DEFAULT_CATALOG_DIR = Path(__file__).resolve().parent / "data"


class Settings(BaseSettings):
    database_url: Optional[str] = Field(None, alias="PHONICS_DATABASE_URL")
    database_pool_size: int = Field(10, alias="PHONICS_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="PHONICS_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="PHONICS_DATABASE_ECHO")
    persistence_mode: Literal["database", "legacy"] = Field(
        "database",
        alias="PHONICS_PERSISTENCE_MODE",
    )
    legacy_store_path: Path = Field(
        DEFAULT_CATALOG_DIR / "progression_states.json",
        alias="PHONICS_LEGACY_STORE_PATH",
    )
    catalog_dir: Path = Field(DEFAULT_CATALOG_DIR, alias="PHONICS_CATALOG_DIR")
    timezone: str = Field("UTC", alias="PHONICS_TIMEZONE")
    base_lesson_xp: int = Field(50, ge=0, alias="PHONICS_BASE_LESSON_XP")
    assessment_questions: int = Field(5, ge=1, alias="PHONICS_ASSESSMENT_QUESTIONS")
    mirror_flush_timeout: float = Field(5.0, ge=0.0, alias="PHONICS_MIRROR_FLUSH_TIMEOUT")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid backend configuration: {exc}") from exc
