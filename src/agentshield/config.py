from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Configuration sourced from environment variables."""

    anthropic_api_key: str | None = None
    model_name: str = "claude-haiku-4-5-20251001"
    model_timeout: float = 30.0
    model_max_tokens: int = 1024

    virus_total: str | None = None
    google_api_key: str | None = None
    sight_api_user: str | None = None
    sight_api_secret: str | None = None

    redis_url: str | None = None
    intel_ttl_hours: int = 24
    domain_cache_ttl: int = 3600
    domain_cache_size: int = 2048

    dns_timeout: float = 3.0
    rdap_timeout: float = 3.0
    reputation_timeout: float = 5.0
    classifier_timeout: float = 15.0
    media_fetch_timeout: float = 15.0
    max_image_bytes: int = 10 * 1024 * 1024

    max_concurrent_media: int = 3
    debug: bool = False
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "",
        "case_sensitive": False,
        "protected_namespaces": (),
    }


@lru_cache(1)
def get_settings() -> Settings:
    return Settings()
