# Datafeed facade consumed by the charting host
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from core.config.settings import Settings
from core.logging import get_market_data_logger_safe

from .connection import StreamConnection
from .models import BarCallback, HistoryError, HistorySuccess, StreamSubscription
from .symbols import SUPPORTED_RESOLUTIONS, resolve_timeframe

logger = get_market_data_logger_safe("market_stream.datafeed")


class DatafeedConfiguration(BaseModel):
    supported_resolutions: List[str] = list(SUPPORTED_RESOLUTIONS)
    supports_search: bool = False
    supports_group_request: bool = False
    supports_marks: bool = False
    supports_timescale_marks: bool = False


class SymbolInfo(BaseModel):
    name: str
    description: str
    type: str = "crypto"
    session: str = "24x7"
    timezone: str = "Etc/UTC"
    exchange: str = ""
    listed_exchange: str = ""
    minmov: int = 1
    pricescale: int = 100000
    has_intraday: bool = True
    supported_resolutions: List[str] = list(SUPPORTED_RESOLUTIONS)
    volume_precision: int = 2
    data_status: str = "streaming"
    format: str = "price"


def price_scale_for(symbol_name: str) -> int:
    """Price scale heuristic: 3 decimals for JPY/XAU, 2 for BTC, 5 otherwise."""
    if "JPY" in symbol_name or "XAU" in symbol_name:
        return 1000
    if "BTC" in symbol_name:
        return 100
    return 100000


class RealtimeDatafeed:
    """Adapts the stream connection to the host's datafeed callbacks."""

    def __init__(self, settings: Settings, connection: Optional[StreamConnection] = None):
        self.settings = settings
        self.connection = connection or StreamConnection(settings)
        self.configuration = DatafeedConfiguration()
        self._listeners: Dict[str, StreamSubscription] = {}

    async def start(self) -> None:
        await self.connection.connect()

    async def stop(self) -> None:
        self._listeners.clear()
        await self.connection.close()

    def on_ready(self) -> DatafeedConfiguration:
        return self.configuration

    def search_symbols(self, user_input: str, exchange: str = "", symbol_type: str = "") -> List[Any]:
        return []

    def resolve_symbol(self, symbol_name: str) -> SymbolInfo:
        return SymbolInfo(
            name=symbol_name,
            description=symbol_name,
            pricescale=price_scale_for(symbol_name),
            supported_resolutions=list(self.configuration.supported_resolutions),
        )

    async def get_bars(self, symbol_name: str, resolution: str, first_data_request: bool,
                       on_history: HistorySuccess, on_error: HistoryError) -> None:
        """Only the first request is served; paging back answers empty."""
        if not first_data_request:
            on_history([], {"no_data": True})
            return
        await self.connection.get_history(
            symbol_name,
            resolve_timeframe(resolution),
            self.settings.stream.history_count,
            on_history,
            on_error,
        )

    async def subscribe_bars(self, symbol_name: str, resolution: str,
                             on_realtime: BarCallback, listener_guid: str) -> None:
        previous = self._listeners.pop(listener_guid, None)
        if previous is not None:
            self.connection.unsubscribe(previous)
        self._listeners[listener_guid] = await self.connection.subscribe(symbol_name, resolution, on_realtime)
        logger.debug("Bars subscribed", symbol=symbol_name, resolution=resolution, listener=listener_guid)

    def unsubscribe_bars(self, listener_guid: str) -> None:
        subscription = self._listeners.pop(listener_guid, None)
        if subscription is not None:
            self.connection.unsubscribe(subscription)

    def get_quotes(self, symbols: List[str]) -> List[Any]:
        return []
