# One-shot history request tracking
from typing import Dict, List, Optional

from core.logging import get_market_data_logger_safe

from .models import Bar, CandleSnapshot, HistoryError, HistoryRequest, HistorySuccess
from .symbols import history_key

logger = get_market_data_logger_safe("market_stream.history")


class HistoryRequestTracker:
    """At most one pending request per (normalized symbol, timeframe).

    Registering a second request for the same key orphans the first one: its
    callbacks are dropped and never invoked.
    """

    def __init__(self):
        self._pending: Dict[str, HistoryRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    def register(self, symbol: str, timeframe: str,
                 on_success: HistorySuccess, on_error: HistoryError) -> str:
        key = history_key(symbol, timeframe)
        if key in self._pending:
            logger.debug("Replacing pending history request", key=key)
        self._pending[key] = HistoryRequest(key=key, on_success=on_success, on_error=on_error)
        return key

    def resolve(self, snapshot: CandleSnapshot) -> bool:
        """Hand the sorted bars to the pending callback and forget it."""
        key = history_key(snapshot.symbol, snapshot.tf)
        request: Optional[HistoryRequest] = self._pending.pop(key, None)
        if request is None:
            logger.debug("Snapshot without pending request", key=key)
            return False

        bars: List[Bar] = sorted((c.to_bar() for c in snapshot.candles), key=lambda b: b.time)
        try:
            request.on_success(bars, {"no_data": len(bars) == 0})
        except Exception as e:
            logger.error("History callback raised", key=key, error=str(e))
        return True

    def discard(self, key: str) -> None:
        self._pending.pop(key, None)

    def clear(self) -> None:
        self._pending.clear()
