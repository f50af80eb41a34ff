"""
Logging channel definitions and configuration.
Stream, reconciliation and REST traffic each get a dedicated file.
"""

from enum import Enum
from typing import Dict, Any, Optional
from pathlib import Path
from dataclasses import dataclass


class LogChannel(str, Enum):
    """Logging channels for different components."""

    APPLICATION = "application"  # General application logs
    MARKET_DATA = "market_data"  # Stream connection and bar fan-out
    TRADING = "trading"          # Reconciliation and mutations
    API = "api"                  # Backend REST requests/responses
    ERROR = "error"              # Error logs


@dataclass
class ChannelConfig:
    """Configuration for a logging channel."""

    name: str
    filename: str
    level: str = "INFO"
    max_bytes: str = "50MB"
    backup_count: int = 5

    def get_file_path(self, logs_dir: str) -> Path:
        """Get the full file path for this channel."""
        return Path(logs_dir) / self.filename


# Channel configurations
CHANNEL_CONFIGS: Dict[LogChannel, ChannelConfig] = {
    LogChannel.APPLICATION: ChannelConfig(
        name="application",
        filename="application.log",
        max_bytes="100MB",
        backup_count=10,
    ),
    LogChannel.MARKET_DATA: ChannelConfig(
        name="market_data",
        filename="market_data.log",
        max_bytes="200MB",  # Large due to high volume
        backup_count=5,
    ),
    LogChannel.TRADING: ChannelConfig(
        name="trading",
        filename="trading.log",
        backup_count=20,
    ),
    LogChannel.API: ChannelConfig(
        name="api",
        filename="api.log",
        backup_count=10,
    ),
    LogChannel.ERROR: ChannelConfig(
        name="error",
        filename="error.log",
        level="ERROR",
        backup_count=20,
    ),
}


def get_channel_for_component(component: str) -> LogChannel:
    """Get the appropriate logging channel for a component."""
    component_mapping = {
        "market_stream": LogChannel.MARKET_DATA,
        "datafeed": LogChannel.MARKET_DATA,
        "broker_sync": LogChannel.TRADING,
        "reconciliation": LogChannel.TRADING,
        "metaapi": LogChannel.API,
        "auth": LogChannel.API,
    }

    return component_mapping.get(component, LogChannel.APPLICATION)


def get_channel_config(channel: LogChannel) -> ChannelConfig:
    """Get configuration for a specific channel."""
    return CHANNEL_CONFIGS[channel]


def create_log_directory_structure(logs_dir: str) -> None:
    """Create the logs directory structure."""
    Path(logs_dir).mkdir(parents=True, exist_ok=True)


def get_channel_statistics() -> Dict[str, Any]:
    """Get statistics about all logging channels."""
    stats: Dict[str, Any] = {
        "total_channels": len(LogChannel),
        "channels": {}
    }

    for channel in LogChannel:
        config = get_channel_config(channel)
        stats["channels"][channel.value] = {
            "filename": config.filename,
            "level": config.level,
            "max_bytes": config.max_bytes,
            "backup_count": config.backup_count,
        }

    return stats
