from enum import StrEnum
from functools import lru_cache
import json
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

class StoreBackendType(StrEnum):
    REDIS = "redis"
    MEMORY = "memory"

class Settings(BaseSettings):
    app_name: str = "PortalGuard"
    redis_url: str = "redis://localhost:6379/0"
    store_backend: StoreBackendType = StoreBackendType.REDIS
    store_timeout_ms: int = 250
    key_prefix: str = "rate_limit"
    log_level: str = "INFO"

    # Comma separated or a JSON list in the environment,
    # e.g. TRUSTED_EDGE_HEADERS=cf-connecting-ip,x-real-ip
    trusted_edge_headers: Annotated[list[str], NoDecode] = ["cf-connecting-ip", "x-real-ip"]
    forwarded_for_header: str | None = "x-forwarded-for"
    fingerprint_header: str | None = "user-agent"

    admin_token: str | None = None
    bypass_tokens: Annotated[list[str], NoDecode] = []
    rate_limit_headers_on_success: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("trusted_edge_headers", "bypass_tokens", mode="before")
    @classmethod
    def split_comma_separated(cls, value: Any) -> Any:
        if isinstance(value, str):
            if value.lstrip().startswith("["):
                return json.loads(value)
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

@lru_cache
def get_settings() -> Settings:
    return Settings()
