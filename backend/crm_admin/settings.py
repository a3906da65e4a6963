from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    gcp_project_id: str | None = None
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:5174,http://127.0.0.1:5174"

    # data layer
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 100
    batch_size: int = 500
    request_timeout_seconds: float = 30.0

    # retries / reconnects share one backoff policy
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    reconnect_base_delay_seconds: float = 2.0
    max_reconnect_attempts: int = 5

    # local session record
    session_file: str = ".crm_session.json"
    session_timeout_seconds: float = 30 * 60
    session_refresh_threshold_seconds: float = 5 * 60

    class Config:
        env_file = ".env"
        env_prefix = "CRM_"

    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
