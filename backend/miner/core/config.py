"""Miner configuration"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# === Path Configuration ===
MINER_DIR = Path(__file__).parent.parent
BACKEND_DIR = MINER_DIR.parent
DATA_DIR = BACKEND_DIR / "data"


class MinerSettings(BaseSettings):
    """Miner settings"""

    model_config = SettingsConfigDict(
        env_file=Path(__file__).parent.parent / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(..., description="PostgreSQL database URL")

    # Seed values for data/config.json (only used when the file does not exist)
    twitch_auth_token: str = Field(default="", description="Twitch OAuth token of the viewer account")
    streamers: str = Field(default="", description="Comma-separated streamer logins, in priority order")

    # Status server
    host: str = Field(default="0.0.0.0", description="Status server bind address")
    port: int = Field(default=4345, description="Status server port")
    autostart: bool = Field(default=True, description="Start mining on boot when a token is present")

    data_dir: Path = Field(default=DATA_DIR, description="Directory for config.json")

    # Scheduling
    context_refresh_interval: float = Field(default=1800.0, description="Seconds between context refreshes")
    minute_watched_interval: float = Field(default=20.0, description="Seconds between watch ticks")
    max_watched: int = Field(default=2, description="Channels watched at once")
    watch_grace_period: float = Field(default=30.0, description="Seconds after going live before watching")
    offline_debounce: float = Field(default=60.0, description="Seconds to ignore online checks after going offline")
    stream_up_confirm_delay: float = Field(default=120.0, description="Seconds after stream-up before confirming via API")
    stale_metadata_age: float = Field(default=600.0, description="Refresh live stream metadata older than this")
    dedup_window: float = Field(default=0.5, description="Seconds within which identical PubSub messages are dropped")

    # PubSub
    pubsub_listen_timeout: float = Field(default=10.0, description="Seconds to wait for a LISTEN response")
    pubsub_pong_timeout: float = Field(default=300.0, description="Reconnect when no PONG for this long")
    pubsub_ping_interval_min: float = Field(default=25.0)
    pubsub_ping_interval_max: float = Field(default=30.0)
    pubsub_reconnect_delay_min: float = Field(default=30.0)
    pubsub_reconnect_delay_max: float = Field(default=60.0)

    # Environment
    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def streamer_list(self) -> list[str]:
        names: list[str] = []
        for raw in self.streamers.split(","):
            name = raw.strip().lower()
            if name and name not in names:
                names.append(name)
        return names

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL starts with postgresql://"""
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError("DATABASE_URL must start with 'postgresql://'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper


@lru_cache
def get_settings() -> MinerSettings:
    """Get cached settings instance"""
    return MinerSettings()  # type: ignore[call-arg]
