"""
Configuration for Mediation Service
===================================

Environment variables:
- DATABASE_URL: SQLAlchemy URL (default: sqlite:///./dev.db), read at engine creation
- DB_CONNECT_TIMEOUT: seconds to wait for a connection / SQLite lock (default: 5)
- DB_POOL_TIMEOUT: seconds to wait for a pooled connection (default: 10)
- JWT_SECRET_KEY: secret for HS256 access tokens
- FANOUT_MODE: inline|rq (default: inline)
- REALTIME_BACKEND: memory|redis (default: memory)
- REDIS_URL: Redis connection for rq and the realtime bridge
- TRANSITION_RETRIES: retries after losing an optimistic-concurrency race (default: 1)
- WS_ALLOW_USER_ID_PARAM: accept `?user_id=` on the WebSocket without a token (default: false)
"""

from enum import Enum
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class FanoutMode(str, Enum):
    """Where notification fan-out runs"""
    INLINE = "inline"
    RQ = "rq"


class RealtimeBackend(str, Enum):
    """Realtime channel transport"""
    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    """Application settings from environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    db_connect_timeout: int = 5
    db_pool_timeout: int = 10
    sql_echo: bool = False

    # Auth
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60

    # Fan-out / jobs
    fanout_mode: FanoutMode = FanoutMode.INLINE
    fanout_queue: str = "notifications"
    fanout_job_timeout: int = 60
    redis_url: str = "redis://localhost:6379/0"

    # Realtime
    realtime_backend: RealtimeBackend = RealtimeBackend.MEMORY
    realtime_queue_size: int = 256
    realtime_redis_prefix: str = "mediation:"
    ws_allow_user_id_param: bool = False

    # Case lifecycle
    transition_retries: int = 1

    # HTTP
    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Service info
    service_version: str = "1.0.0"

    def cors_origins(self) -> List[str]:
        origins: List[str] = []
        for item in self.cors_allow_origins.split(","):
            origin = item.strip().strip('"').strip("'").rstrip("/")
            if origin:
                origins.append(origin)
        return origins

    def validate_runtime_config(self) -> List[str]:
        """Validate configuration, return list of warnings"""
        warnings = []

        if self.jwt_secret_key == "dev-secret-key-change-in-production":
            warnings.append("JWT_SECRET_KEY is the development default")

        if self.ws_allow_user_id_param:
            warnings.append("WS_ALLOW_USER_ID_PARAM is on: sockets may connect as any user without a token")

        if self.transition_retries < 0:
            warnings.append("TRANSITION_RETRIES is negative; treating as 0")

        if self.fanout_mode == FanoutMode.RQ and self.realtime_backend == RealtimeBackend.MEMORY:
            warnings.append(
                "FANOUT_MODE=rq with REALTIME_BACKEND=memory: worker-side user notifications "
                "will not reach connected sockets"
            )

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
