# trade_sync/app/main.py

import asyncio
import signal
import sys
from typing import Callable, List, Optional, Sequence

from core.config.settings import Settings
from core.logging import configure_logging, get_error_logger_safe, get_logger, get_trading_logger_safe
from core.utils.exceptions import ConfigurationError
from services.broker_sync import (
    CallbackConsumer,
    ConsumerCapabilities,
    MetaApiClient,
    ReconciliationEngine,
    settings_token_provider,
)
from services.market_stream import Bar, RealtimeDatafeed


def logging_consumer() -> CallbackConsumer:
    """Consumer that writes every notification to the trading channel."""
    logger = get_trading_logger_safe("consumer")
    return CallbackConsumer(
        on_position=lambda p: logger.info("positionUpdate", id=p.id, symbol=p.symbol,
                                          side=p.side.name, qty=p.volume_lots,
                                          take_profit=p.take_profit, stop_loss=p.stop_loss),
        on_order=lambda o: logger.info("orderUpdate", id=o.id, symbol=o.symbol, type=o.type.name,
                                       status=o.status.name, qty=o.qty, parent_id=o.parent_id,
                                       price=o.trigger_price),
        on_pl=lambda symbol, pl: logger.info("plUpdate", symbol=symbol, pl=pl),
    )


class ApplicationOrchestrator:
    """Wires settings, logging, the REST client, the engine and the stream."""

    def __init__(self, settings: Optional[Settings] = None,
                 enable_sync: bool = True,
                 stream_symbols: Sequence[str] = (),
                 resolution: str = "1",
                 consumer: Optional[ConsumerCapabilities] = None,
                 on_bar: Optional[Callable[[Bar], None]] = None):
        self.settings = settings or Settings()
        configure_logging(self.settings)
        self.logger = get_logger("trade_sync.main", component="application")
        self._shutdown_event = asyncio.Event()

        self.enable_sync = enable_sync
        self.stream_symbols = list(stream_symbols)
        self.resolution = resolution
        self.consumer = consumer
        self.on_bar = on_bar

        self.client = MetaApiClient(self.settings)
        self.engine: Optional[ReconciliationEngine] = None
        self.datafeed: Optional[RealtimeDatafeed] = None
        self._started: List[object] = []

        self.logger.info(f"🏢 {self.settings.app_name} initializing",
                         environment=self.settings.environment.value,
                         sync=enable_sync, symbols=self.stream_symbols)
        self._validate_configuration()

    def _validate_configuration(self):
        if not self.enable_sync:
            return
        metaapi = self.settings.metaapi
        if not metaapi.account_id:
            get_error_logger_safe("trade_sync.main").error(
                "Account sync enabled but METAAPI__ACCOUNT_ID is not configured")
            raise ConfigurationError("No account ID configured", config_field="metaapi.account_id")
        if not metaapi.access_token and not metaapi.password:
            self.logger.warning("Account sync enabled but neither access token nor password is configured")

    async def startup(self):
        self.logger.info("🚀 Starting services...")

        if self.enable_sync:
            self.engine = ReconciliationEngine(
                self.settings,
                self.client,
                token_provider=settings_token_provider(self.settings, self.client),
            )
            registration = self.engine.register(self.consumer or logging_consumer())
            await self.engine.start()
            self._started.append(self.engine)
            registration.signal_ready()
            self.logger.info("✅ Reconciliation engine started", account_id=self.engine.account_id)

        if self.stream_symbols:
            self.datafeed = RealtimeDatafeed(self.settings)
            await self.datafeed.start()
            self._started.append(self.datafeed)
            for symbol in self.stream_symbols:
                await self.datafeed.subscribe_bars(
                    symbol, self.resolution, self.on_bar or self._log_bar, listener_guid=f"cli-{symbol}",
                )
            self.logger.info("✅ Market stream started", symbols=self.stream_symbols, resolution=self.resolution)

    def _log_bar(self, bar: Bar) -> None:
        self.logger.info("bar", time=bar.time, open=bar.open, high=bar.high,
                         low=bar.low, close=bar.close, volume=bar.volume)

    async def shutdown(self):
        self.logger.info(f"🛑 Shutting down {self.settings.app_name}...")
        for service in reversed(self._started):
            try:
                await service.stop()
            except Exception as e:
                self.logger.warning(f"⚠️ Error stopping {type(service).__name__}: {e}")
        self._started.clear()
        await self.client.close()
        self.logger.info("✅ Shutdown complete.")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _signal_handler(self, signum, frame):
        try:
            self.logger.info(f"Received shutdown signal: {signal.strsignal(signum)}")
            self._shutdown_event.set()
        except Exception as e:
            print(f"Error in signal handler: {e}", file=sys.stderr)
            self._shutdown_event.set()

    async def run(self):
        """Run until SIGINT/SIGTERM."""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        try:
            await self.startup()
            self.logger.info("Application is now running. Press Ctrl+C to exit.")
            await self._shutdown_event.wait()
        finally:
            await self.shutdown()


async def main():
    """Application entry point"""
    try:
        app = ApplicationOrchestrator()
    except ConfigurationError as e:
        get_logger("trade_sync.main").critical("Configuration invalid, cannot start",
                                               field=e.config_field, error=e.message)
        sys.exit(1)
    await app.run()


if __name__ == "__main__":
    asyncio.run(main())
