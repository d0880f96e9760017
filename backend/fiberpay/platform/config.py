from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(
            str(Path(__file__).resolve().parents[3] / ".env"),
            ".env",
        ),
        env_ignore_empty=True,
        extra="ignore",
    )

    fiber_rpc_url: str = "http://127.0.0.1:8227"
    fiber_rpc_timeout_seconds: float = 30.0

    recipient_pubkey: str | None = None
    rate_per_second_ckb: str = "0.0001"
    payment_interval_ms: int = 1000
    min_payment_shannon: int = 1
    payment_settle_attempts: int = 10
    payment_settle_interval_seconds: float = 0.5
    tick_history_limit: int = 50

    route_probe_ckb: str = "0.01"
    default_funding_ckb: str = "100"
    channel_poll_interval_seconds: float = 3.0
    channel_poll_max_attempts: int = 200

    allowed_origins: str = "http://localhost:3000"
    log_level: str = "INFO"


settings = Settings()
