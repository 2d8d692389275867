"""
Application configuration and settings.
"""
from functools import lru_cache
from typing import List, Literal, Set

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = "Video Sharing Backend"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    port: int = 8000
    log_level: str = "INFO"

    # CORS
    cors_origins: str = "*"

    # MongoDB
    mongodb_uri: str = "mongodb://localhost:27017"
    database_name: str = "videotube"

    # Tokens
    access_token_secret: str = "change-this-in-production"
    access_token_expire_minutes: int = 60 * 24
    refresh_token_secret: str = "change-this-refresh-secret"
    refresh_token_expire_days: int = 10
    jwt_algorithm: str = "HS256"

    # Uploads
    upload_dir: str = "uploads"
    temp_dir: str = "uploads/temp"
    public_url_prefix: str = "/static"
    max_upload_size_mb: int = 80
    upload_content_types: str = (
        "image/jpeg,image/png,image/webp,image/gif,"
        "video/mp4,video/webm,video/quicktime,video/x-matroska"
    )

    # Pagination
    default_page_size: int = 10
    max_page_size: int = 100

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def upload_content_type_set(self) -> Set[str]:
        return {t.strip().lower() for t in self.upload_content_types.split(",") if t.strip()}

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
