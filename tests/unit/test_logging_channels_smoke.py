import logging

import core.logging as core_logging
from core.config.settings import Settings
from core.logging import (
    configure_logging,
    enhanced_logging,
    get_api_logger_safe,
    get_error_logger_safe,
    get_market_data_logger_safe,
    get_statistics,
    get_trading_logger_safe,
)


def test_logging_channels_write_files(tmp_path, monkeypatch):
    # Use a temporary logs directory to avoid polluting repo logs
    logs_dir = tmp_path / "logs"
    monkeypatch.setenv("LOGGING__FILE_ENABLED", "true")
    monkeypatch.setenv("LOGGING__CONSOLE_ENABLED", "false")
    monkeypatch.setenv("LOGGING__MULTI_CHANNEL_ENABLED", "true")
    monkeypatch.setenv("LOGGING__LOGS_DIR", str(logs_dir))
    monkeypatch.setenv("ENVIRONMENT", "testing")

    # Start from an unconfigured logging system
    monkeypatch.setattr(core_logging, "_logging_configured", False)
    monkeypatch.setattr(enhanced_logging, "_enhanced_logging_configured", False)
    monkeypatch.setattr(enhanced_logging, "_logger_manager", None)

    root = logging.getLogger()
    handlers_before = list(root.handlers)
    level_before = root.level
    try:
        settings = Settings(_env_file=None)
        configure_logging(settings)

        get_trading_logger_safe("smoke.trading").info("trading smoke message", token="abc")
        get_market_data_logger_safe("smoke.market").info("market smoke message")
        get_api_logger_safe("smoke.api").info("api smoke message")
        get_error_logger_safe("smoke.error").error("error smoke message")

        for handler in root.handlers:
            handler.flush()
        manager = enhanced_logging._logger_manager
        for handler in manager.channel_handlers.values():
            handler.flush()

        for name in ("trading.log", "market_data.log", "api.log", "error.log"):
            path = logs_dir / name
            assert path.exists(), f"expected log file not found: {path}"
            assert path.stat().st_size > 0, f"expected log file to have content: {path}"

        trading = (logs_dir / "trading.log").read_text()
        assert "trading smoke message" in trading
        assert "abc" not in trading
        assert "market smoke message" not in trading

        stats = get_statistics()
        assert stats["file_enabled"] is True
    finally:
        for handler in list(root.handlers):
            if handler not in handlers_before:
                root.removeHandler(handler)
                handler.close()
        manager = enhanced_logging._logger_manager
        if manager is not None:
            for handler in manager.channel_handlers.values():
                handler.close()
        root.setLevel(level_before)
