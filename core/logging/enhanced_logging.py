# Enhanced structured logging with multi-channel support
import sys
import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Optional, Any
import structlog

from core.config.settings import Settings
from .channels import (
    LogChannel,
    get_channel_for_component,
    get_channel_config,
    create_log_directory_structure,
    get_channel_statistics
)

# Global logger manager instance
_logger_manager: Optional['EnhancedLoggerManager'] = None

# Global flag to prevent duplicate configuration
_enhanced_logging_configured = False

_SIZE_UNITS = {"KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3}


class ChannelFilter(logging.Filter):
    """Filter that routes records to a handler only if they match a channel.

    Records without a structured `channel` attribute are rejected unless their
    logger name starts with one of `allowed_logger_prefixes`.
    """

    def __init__(self, expected_channel: str, allowed_logger_prefixes: Optional[list[str]] = None):
        super().__init__()
        self.expected_channel = expected_channel
        self.allowed_logger_prefixes = allowed_logger_prefixes or []

    def filter(self, record: logging.LogRecord) -> bool:
        ch = getattr(record, "channel", None)
        if ch is None and isinstance(record.msg, dict):
            ch = record.msg.get("channel")
        if ch is not None:
            return str(ch) == self.expected_channel
        name = getattr(record, "name", "")
        for prefix in self.allowed_logger_prefixes:
            if name.startswith(prefix):
                return True
        return False


class EnhancedLoggerManager:
    """Logging manager with multi-channel support and configurable formats."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.channel_handlers: Dict[LogChannel, logging.Handler] = {}
        self.configured_loggers: Dict[str, Any] = {}

        self._setup_logging()

    def _setup_logging(self) -> None:
        if self.settings.logging.file_enabled:
            create_log_directory_structure(self.settings.logs_dir)

        self._setup_console_logging()

        if self.settings.logging.file_enabled:
            self._setup_file_logging()

        if self.settings.logging.multi_channel_enabled:
            self._setup_multi_channel_logging()

        self._configure_structlog()

    def _foreign_chain(self) -> list:
        return [
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
        ]

    def _file_processor(self):
        if self.settings.logging.json_format:
            return structlog.processors.JSONRenderer()
        return structlog.processors.KeyValueRenderer(key_order=["event", "level", "timestamp"])

    def _setup_console_logging(self) -> None:
        """Setup console logging with configurable format."""
        root_logger = logging.getLogger()
        level = getattr(logging, self.settings.logging.level.upper())
        root_logger.setLevel(level)

        if not self.settings.logging.console_enabled:
            for handler in list(root_logger.handlers):
                if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) == sys.stdout:
                    root_logger.removeHandler(handler)
            return

        console_processor = (
            structlog.processors.JSONRenderer()
            if self.settings.logging.console_json_format
            else structlog.dev.ConsoleRenderer()
        )
        formatter = structlog.stdlib.ProcessorFormatter(
            processor=console_processor,
            foreign_pre_chain=self._foreign_chain(),
        )

        # Reuse an existing stdout handler instead of stacking a second one
        for handler in root_logger.handlers:
            if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) == sys.stdout:
                handler.setLevel(level)
                handler.setFormatter(formatter)
                return

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)

        root_logger.addHandler(console_handler)

    def _setup_file_logging(self) -> None:
        """Setup the combined application log file."""
        log_file = Path(self.settings.logs_dir) / "trade_sync.log"
        root_logger = logging.getLogger()

        for handler in root_logger.handlers:
            if (isinstance(handler, logging.handlers.RotatingFileHandler) and
                    Path(handler.baseFilename) == log_file.resolve()):
                return

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=self._parse_size(self.settings.logging.file_max_size),
            backupCount=self.settings.logging.file_backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(getattr(logging, self.settings.logging.level.upper()))
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=self._file_processor(),
                foreign_pre_chain=self._foreign_chain(),
            )
        )
        root_logger.addHandler(file_handler)

    def _setup_multi_channel_logging(self) -> None:
        """Setup multi-channel logging with dedicated files."""
        # Channel handlers are file-backed
        if not self.settings.logging.file_enabled:
            return

        for channel in LogChannel:
            self.channel_handlers[channel] = self._create_channel_handler(channel)

        # aiohttp client internals go to the API channel
        api_handler = self.channel_handlers.get(LogChannel.API)
        if api_handler:
            for name in ("aiohttp.client", "aiohttp.internal"):
                lg = logging.getLogger(name)
                if api_handler not in lg.handlers:
                    lg.addHandler(api_handler)
                if lg.level == logging.NOTSET:
                    lg.setLevel(logging.WARNING)

        # ERROR channel captures every ERROR+ record from root
        error_handler = self.channel_handlers.get(LogChannel.ERROR)
        if error_handler:
            error_handler.setLevel(logging.ERROR)
            root_logger = logging.getLogger()
            if error_handler not in root_logger.handlers:
                root_logger.addHandler(error_handler)

    def _create_channel_handler(self, channel: LogChannel) -> logging.Handler:
        """Create a file handler for a specific channel."""
        config = get_channel_config(channel)
        handler = logging.handlers.RotatingFileHandler(
            filename=config.get_file_path(self.settings.logs_dir),
            maxBytes=self._parse_size(config.max_bytes),
            backupCount=config.backup_count,
            encoding="utf-8"
        )
        handler.setLevel(getattr(logging, config.level))
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=self._file_processor(),
                foreign_pre_chain=self._foreign_chain(),
            )
        )
        if channel != LogChannel.ERROR:
            allowed_prefixes = ["aiohttp"] if channel == LogChannel.API else []
            handler.addFilter(ChannelFilter(expected_channel=channel.value, allowed_logger_prefixes=allowed_prefixes))
        return handler

    def _parse_size(self, size_str: str) -> int:
        """Parse '50MB' style sizes into bytes."""
        size_str = size_str.strip().upper()
        for unit, factor in _SIZE_UNITS.items():
            if size_str.endswith(unit):
                return int(float(size_str[:-len(unit)]) * factor)
        return int(size_str)

    def _configure_structlog(self) -> None:
        """Configure structlog with appropriate processors."""

        def add_standard_context(logger, name, event_dict):
            """Bind standard context fields once from settings."""
            event_dict.setdefault('env', getattr(self.settings.environment, "value", str(self.settings.environment)))
            event_dict.setdefault('service', self.settings.app_name)
            event_dict.setdefault('version', self.settings.version)
            return event_dict

        keys_to_redact = {k.lower() for k in self.settings.logging.redact_keys}

        def redact_sensitive(logger, name, event_dict):
            """Redact sensitive fields from event dict recursively."""

            def _redact(obj):
                if isinstance(obj, dict):
                    out = {}
                    for k, v in obj.items():
                        if isinstance(k, str) and k.lower() in keys_to_redact:
                            out[k] = '[REDACTED]'
                        else:
                            out[k] = _redact(v)
                    return out
                if isinstance(obj, list):
                    return [_redact(v) for v in obj]
                return obj

            return _redact(event_dict)

        def normalize_error(logger, name, event_dict):
            """Add normalized error fields if exception info is present."""
            exc_text = event_dict.get("exception")
            if exc_text and isinstance(exc_text, str):
                event_dict.setdefault("stack", exc_text)
            if "error" in event_dict and not event_dict.get("error_message"):
                event_dict["error_message"] = str(event_dict["error"])
            return event_dict

        processors = [
            add_standard_context,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            normalize_error,
            structlog.processors.UnicodeDecoder(),
            redact_sensitive,
            # Defer final rendering to handlers via ProcessorFormatter
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ]

        structlog.configure(
            processors=processors,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str, component: Optional[str] = None):
        """Get a structured logger for a component."""
        cache_key = f"{name}:{component}"
        if cache_key in self.configured_loggers:
            return self.configured_loggers[cache_key]

        logger = structlog.get_logger(name)
        if component:
            channel = get_channel_for_component(component)
            logger = logger.bind(component=component, channel=channel.value)
            self._attach_channel_handler(name, channel)

        self.configured_loggers[cache_key] = logger
        return logger

    def get_channel_logger(self, name: str, channel: LogChannel):
        """Get a logger for a specific channel."""
        logger = structlog.get_logger(name).bind(channel=channel.value)
        self._attach_channel_handler(name, channel)
        return logger

    def _attach_channel_handler(self, name: str, channel: LogChannel) -> None:
        handler = self.channel_handlers.get(channel)
        if handler is None:
            return
        stdlib_logger = logging.getLogger(name)
        if handler not in stdlib_logger.handlers:
            stdlib_logger.addHandler(handler)

    def get_statistics(self) -> Dict[str, Any]:
        """Get logging statistics."""
        return {
            "configured_loggers": len(self.configured_loggers),
            "channel_handlers": [channel.value for channel in self.channel_handlers],
            "multi_channel_enabled": self.settings.logging.multi_channel_enabled,
            "file_enabled": self.settings.logging.file_enabled,
            "channels": get_channel_statistics(),
        }


def configure_enhanced_logging(settings: Settings) -> None:
    """Configure enhanced logging system."""
    global _logger_manager, _enhanced_logging_configured

    if _enhanced_logging_configured:
        return

    _logger_manager = EnhancedLoggerManager(settings)
    _enhanced_logging_configured = True


def get_enhanced_logger(name: str, component: Optional[str] = None):
    """Get a structured logger instance."""
    if _logger_manager is None:
        # Not configured yet: structlog defaults still give structured output
        logger = structlog.get_logger(name)
        if component:
            logger = logger.bind(component=component)
        return logger

    return _logger_manager.get_logger(name, component)


def get_channel_logger(name: str, channel: LogChannel):
    """Get a logger for a specific channel."""
    if _logger_manager is None:
        return structlog.get_logger(name).bind(channel=channel.value)

    return _logger_manager.get_channel_logger(name, channel)


def get_logging_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    if _logger_manager is None:
        return {"error": "Logger manager not initialized"}

    return _logger_manager.get_statistics()


def get_trading_logger(name: str):
    """Get a trading-specific logger."""
    return get_channel_logger(name, LogChannel.TRADING)


def get_market_data_logger(name: str):
    """Get a market data logger."""
    return get_channel_logger(name, LogChannel.MARKET_DATA)


def get_api_logger(name: str):
    """Get an API logger."""
    return get_channel_logger(name, LogChannel.API)


def get_error_logger(name: str):
    """Get an error logger."""
    return get_channel_logger(name, LogChannel.ERROR)
