"""
Realtime Client Settings
Configuration management using Pydantic Settings
"""

from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings with environment variable support (prefix ``REALTIME_``)"""

    # Application
    app_name: str = "polymarket-realtime"
    log_level: str = Field(default="INFO")

    # Endpoints
    clob_market_url: str = Field(default="wss://ws-subscriptions-clob.polymarket.com/ws/market")
    clob_user_url: str = Field(default="wss://ws-subscriptions-clob.polymarket.com/ws/user")
    rtds_url: str = Field(default="wss://ws-live-data.polymarket.com")

    # Connection behaviour (seconds)
    auto_reconnect: bool = Field(default=True)
    max_reconnect_attempts: Optional[int] = Field(default=None, ge=0)
    reconnect_base_delay: float = Field(default=1.0, ge=0)
    max_reconnect_delay: float = Field(default=30.0, ge=0)
    reconnect_jitter: float = Field(default=1.0, ge=0)
    connection_timeout: float = Field(default=10.0, gt=0)
    # Unset keeps each channel's own interval
    heartbeat_interval: Optional[float] = Field(default=None, gt=0)

    # CLOB API credentials (user channel)
    clob_api_key: Optional[str] = Field(default=None)
    clob_secret: Optional[str] = Field(default=None)
    clob_passphrase: Optional[str] = Field(default=None)

    # Demo
    demo_symbols: str = Field(default="btcusdt,ethusdt")

    model_config = SettingsConfigDict(
        env_prefix="REALTIME_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def has_clob_credentials(self) -> bool:
        return bool(self.clob_api_key and self.clob_secret and self.clob_passphrase)

    def connection_options(self) -> Dict[str, Any]:
        """Keyword options accepted by every channel client."""
        options = {
            "auto_reconnect": self.auto_reconnect,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "reconnect_base_delay": self.reconnect_base_delay,
            "max_reconnect_delay": self.max_reconnect_delay,
            "reconnect_jitter": self.reconnect_jitter,
            "connection_timeout": self.connection_timeout,
        }
        if self.heartbeat_interval is not None:
            options["heartbeat_interval"] = self.heartbeat_interval
        return options


# Global settings instance
settings = Settings()
