# Structured logging with multi-channel support
from typing import Optional, Dict, Any

import structlog

from core.config.settings import Settings
from .channels import LogChannel
from .enhanced_logging import (
    configure_enhanced_logging,
    get_enhanced_logger,
    get_channel_logger,
    get_logging_statistics,
    get_trading_logger,
    get_market_data_logger,
    get_api_logger,
    get_error_logger,
)

# Global flag to prevent duplicate logging configuration
_logging_configured = False


def configure_logging(settings: Settings) -> None:
    """Configure the logging system once per process."""
    global _logging_configured

    if _logging_configured:
        return

    configure_enhanced_logging(settings)
    _logging_configured = True


def get_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return get_enhanced_logger(name, component)


def get_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    return get_logging_statistics()


# Channel-specific logger functions
def get_trading_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a trading logger, falling back to a component logger."""
    try:
        return get_trading_logger(name)
    except Exception:
        return get_enhanced_logger(name, "broker_sync")


def get_market_data_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a market data logger, falling back to a component logger."""
    try:
        return get_market_data_logger(name)
    except Exception:
        return get_enhanced_logger(name, "market_stream")


def get_api_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an API logger, falling back to a component logger."""
    try:
        return get_api_logger(name)
    except Exception:
        return get_enhanced_logger(name, "metaapi")


def get_error_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an error logger, falling back to a plain logger."""
    try:
        return get_error_logger(name)
    except Exception:
        return get_enhanced_logger(name)


__all__ = [
    "LogChannel",
    "configure_logging",
    "get_logger",
    "get_statistics",
    "get_channel_logger",
    "get_trading_logger_safe",
    "get_market_data_logger_safe",
    "get_api_logger_safe",
    "get_error_logger_safe",
]
