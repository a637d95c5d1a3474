#Description: Pydantic settings loader with defaults, reading .env.
import os
import pathlib

from pydantic_settings import BaseSettings
from pydantic import Field
from dotenv import load_dotenv

env_path = pathlib.Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

class Settings(BaseSettings):
    APP_ENV: str = Field(default="development")
    DATABASE_URL: str = Field(default="sqlite:///./orders.db")
    MODE: str = Field(default=os.getenv("MODE", "paper"))  # live|paper

    # Circuit breakers
    BREAKER_FAILURE_THRESHOLD: int = Field(default=5)
    BREAKER_RESET_TIMEOUT_SECONDS: float = Field(default=30.0)
    BREAKER_HALF_OPEN_RETRIES: int = Field(default=3)
    BREAKER_MAX_QUEUE_SIZE: int = Field(default=100)
    BREAKER_STATUS_INTERVAL_SECONDS: int = Field(default=10)
    # e.g. {"broker": {"failure_threshold": 3, "reset_timeout": 60}}
    BREAKER_OVERRIDES: dict[str, dict] = Field(default_factory=dict)

    # Live price feed
    FEED_URL_TEMPLATE: str = Field(default="wss://ws.dextools.io/{network}/price/{token}")
    FEED_MAX_RECONNECT_ATTEMPTS: int = Field(default=5)
    FEED_BACKOFF_BASE_SECONDS: float = Field(default=1.0)
    FEED_BACKOFF_CAP_SECONDS: float = Field(default=30.0)
    FEED_BACKOFF_JITTER_SECONDS: float = Field(default=0.5)
    FEED_HEARTBEAT_INTERVAL_SECONDS: float = Field(default=60.0)
    FEED_HEARTBEAT_TIMEOUT_SECONDS: float = Field(default=30.0)
    FEED_BATCH_WINDOW_SECONDS: float = Field(default=0.05)
    FEED_RESUBSCRIBE_SECONDS: float = Field(default=300.0)
    FEED_PRICE_MAX_AGE_SECONDS: float = Field(default=15.0)

    # Order scheduling
    ORDER_RETRY_COUNT: int = Field(default=3)
    ORDER_RETRY_BACKOFF_SECONDS: float = Field(default=1.0)
    ORDER_COALESCE_WINDOW_SECONDS: float = Field(default=1.0)
    TRADE_SLIPPAGE_PCT: float = Field(default=1.0)

    # Collaborators
    QUOTE_API_URL: str = Field(default="https://api.dexscreener.com/latest/dex/tokens")
    BROKER_API_URL: str | None = None
    BROKER_API_KEY: str | None = None
    WALLET_API_URL: str | None = None
    HTTP_TIMEOUT_SECONDS: float = Field(default=10.0)

    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: str | None = None

    class Config:
        env_file = ".env"
        extra = "allow"

settings = Settings()
