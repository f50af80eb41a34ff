# Complete settings with ALL required sections
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from enum import Enum
from typing import Optional
from pathlib import Path


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class LoggingSettings(BaseModel):
    # Core logging settings
    level: str = "INFO"
    json_format: bool = True

    # Console logging
    console_enabled: bool = True
    console_json_format: bool = False  # Plain text for console by default

    # File logging
    file_enabled: bool = False
    logs_dir: str = "logs"
    file_max_size: str = "50MB"
    file_backup_count: int = 5

    # Multi-channel logging
    multi_channel_enabled: bool = True

    # Redaction
    redact_keys: list[str] = [
        "authorization", "access_token", "token", "password", "secret", "set-cookie"
    ]


class StreamSettings(BaseModel):
    """Market data stream connection configuration"""
    url: str = "wss://metaapi.zuperior.com/ws"
    reconnect_delay_seconds: float = 2.0  # fixed delay, no backoff
    history_count: int = 1000
    heartbeat_seconds: Optional[float] = None

    @field_validator("reconnect_delay_seconds")
    @classmethod
    def validate_reconnect_delay(cls, v):
        if v <= 0:
            raise ValueError("reconnect_delay_seconds must be positive")
        return v


class SyncSettings(BaseModel):
    """Broker-state reconciliation configuration"""
    poll_interval_seconds: float = 2.0
    grace_window_seconds: float = 4.0
    edit_confirm_delay_seconds: float = 4.5
    close_confirm_delay_seconds: float = 0.5

    # Volume scaling between backend units and lots
    units_per_lot: int = 10000
    position_volume_divisor: int = 10000
    order_volume_divisor: int = 100

    # Host rescales bracket quantities when drawing, so projected P/L is scaled up
    bracket_pl_display_multiplier: float = 100.0

    @field_validator(
        "poll_interval_seconds",
        "grace_window_seconds",
        "edit_confirm_delay_seconds",
        "close_confirm_delay_seconds",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("intervals must be positive")
        return v


class MetaApiSettings(BaseModel):
    """Account backend (REST) configuration"""
    base_url: str = "https://metaapi.zuperior.com"
    request_timeout_seconds: float = 15.0
    account_id: Optional[str] = None
    # Static token; when unset the client logs in with the credentials below
    access_token: Optional[str] = None
    password: Optional[str] = None
    device_id: str = "trade-sync"
    device_type: str = "web"

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")


class Settings(BaseSettings):
    """Main application settings, loaded from environment variables"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    app_name: str = "Trade Sync"
    version: str = "0.3.0"
    environment: Environment = Environment.DEVELOPMENT

    logging: LoggingSettings = LoggingSettings()
    stream: StreamSettings = StreamSettings()
    sync: SyncSettings = SyncSettings()
    metaapi: MetaApiSettings = MetaApiSettings()

    @property
    def logs_dir(self) -> str:
        """Get absolute path to logs directory"""
        return self.logging.logs_dir

    @property
    def base_dir(self) -> str:
        """Get base application directory dynamically"""
        # Go up 2 levels from core/config/settings.py to reach project root
        return str(Path(__file__).resolve().parents[2])


# No global settings instance - use dependency injection instead
