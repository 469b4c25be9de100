"""Configuration for the local assistant."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """Settings for the local assistant, read from env / .env."""

    data_dir: Path = Field(default=Path("./data"))
    database_name: str = Field(default="offline_doctor.db")

    backend_port: int = Field(default=8080)
    health_check_attempts: int = Field(default=30)
    health_check_interval: float = Field(default=1.0)
    completion_timeout: float = Field(default=300.0)
    shutdown_grace_period: float = Field(default=5.0)
    extra_binary_dirs: List[Path] = Field(default_factory=list)

    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=8000)
    log_level: str = Field(default="INFO")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "OFFLINE_DOCTOR_",
        "case_sensitive": False,
    }

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database_name

    @property
    def models_dir(self) -> Path:
        return self.data_dir / "models"


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return cached settings instance."""
    settings = AppSettings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings
