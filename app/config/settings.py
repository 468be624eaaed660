import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field


def _split_csv(raw: str) -> list[str]:
    return [s.strip() for s in raw.split(",") if s.strip()]


class Settings(BaseModel):
    RELAY_UPSTREAM_URL: str
    RELAY_STREAMS: list[str] = Field(min_length=1)
    RELAY_BACKOFF_BASE_SEC: float = Field(gt=0)
    RELAY_BACKOFF_CAP_SEC: float = Field(gt=0)
    RELAY_BACKOFF_JITTER_SEC: float = Field(ge=0)
    RELAY_UPSTREAM_SEND_TIMEOUT_SEC: float = Field(gt=0)
    RELAY_CLIENT_QUEUE_SIZE: int = Field(ge=1)
    RELAY_CLIENT_SEND_TIMEOUT_SEC: float = Field(gt=0)
    RELAY_CORS_ORIGINS: list[str]
    RELAY_LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"]

    @classmethod
    def from_env(cls) -> "Settings":
        streams = _split_csv(os.getenv("RELAY_STREAMS", "trade,depth20,ticker"))
        origins = _split_csv(os.getenv("RELAY_CORS_ORIGINS", "http://localhost:3000"))

        return cls.model_validate(
            {
                "RELAY_UPSTREAM_URL": os.getenv("RELAY_UPSTREAM_URL", "wss://stream.binance.com:9443/stream"),
                "RELAY_STREAMS": streams,
                "RELAY_BACKOFF_BASE_SEC": os.getenv("RELAY_BACKOFF_BASE_SEC", "1.0"),
                "RELAY_BACKOFF_CAP_SEC": os.getenv("RELAY_BACKOFF_CAP_SEC", "30.0"),
                "RELAY_BACKOFF_JITTER_SEC": os.getenv("RELAY_BACKOFF_JITTER_SEC", "0.5"),
                "RELAY_UPSTREAM_SEND_TIMEOUT_SEC": os.getenv("RELAY_UPSTREAM_SEND_TIMEOUT_SEC", "5.0"),
                "RELAY_CLIENT_QUEUE_SIZE": os.getenv("RELAY_CLIENT_QUEUE_SIZE", "256"),
                "RELAY_CLIENT_SEND_TIMEOUT_SEC": os.getenv("RELAY_CLIENT_SEND_TIMEOUT_SEC", "5.0"),
                "RELAY_CORS_ORIGINS": origins,
                "RELAY_LOG_LEVEL": os.getenv("RELAY_LOG_LEVEL", "INFO").upper(),
            }
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
