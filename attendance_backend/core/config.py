from __future__ import annotations

import secrets
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Classroom Attendance Backend"
    app_env: str = "development"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/attendance.db"

    # Stub principal used when bearer tokens are not enforced.
    auth_required: bool = False
    stub_user_id: int = 2
    stub_user_role: str = "teacher"

    jwt_secret: str = Field(default_factory=lambda: secrets.token_urlsafe(48))
    jwt_algorithm: str = "HS256"
    access_token_minutes: int = 60

    bootstrap_admin_username: str = "admin"
    bootstrap_admin_password: str = "ChangeMe123!"
    bootstrap_admin_role: str = "admin"

    embedding_cipher_key: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    min_embedding_length: int = 120
    embeddings_max_limit: int = 1000
    face_preview_max_chars: int = 2_000_000

    method_max_length: int = 50
    shortage_threshold_percent: int = 75

    cors_origins_raw: str = "http://localhost:3000,http://localhost:4000,http://localhost:5173"

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
