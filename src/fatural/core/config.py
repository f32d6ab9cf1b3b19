from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"
    secret_key: str = "change-me"

    database_url: str = "sqlite:///./fatural.db"
    redis_url: str = "redis://localhost:6379/0"

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")
    signed_url_ttl_seconds: int = 3600

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "fatural-receipts"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o"
    oracle_timeout_seconds: float = 120.0
    oracle_max_tokens: int = 4000

    # PDF render zoom factor (1.0 == 72 DPI); clamped to MIN_RASTER_SCALE.
    rasterize_scale: float = 2.0

    status_channel_backend: Literal["memory", "redis"] = "memory"
    status_channel_name: str = "fatural:receipt-status"


settings = Settings()
