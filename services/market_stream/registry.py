# Subscription registry: (normalized symbol, timeframe) -> listeners
from typing import Dict, List, Set

from core.logging import get_market_data_logger_safe

from .models import BarCallback, CandleUpdate, StreamSubscription
from .symbols import normalize_symbol, resolve_timeframe

logger = get_market_data_logger_safe("market_stream.registry")


class SubscriptionRegistry:
    """Tracks live-bar listeners and fans inbound updates out to them."""

    def __init__(self):
        # Insertion ordered; subscription objects are the unsubscribe tokens
        self._subscriptions: Dict[int, StreamSubscription] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def add(self, symbol: str, resolution: str, callback: BarCallback) -> StreamSubscription:
        subscription = StreamSubscription(
            symbol=symbol,
            normalized_symbol=normalize_symbol(symbol),
            timeframe=resolve_timeframe(resolution),
            callback=callback,
        )
        self._subscriptions[id(subscription)] = subscription
        return subscription

    def remove(self, subscription: StreamSubscription) -> bool:
        return self._subscriptions.pop(id(subscription), None) is not None

    def clear(self) -> None:
        self._subscriptions.clear()

    def symbols(self) -> List[str]:
        """Union of normalized symbols, in first-subscribed order."""
        seen: Set[str] = set()
        ordered: List[str] = []
        for sub in self._subscriptions.values():
            if sub.normalized_symbol and sub.normalized_symbol not in seen:
                seen.add(sub.normalized_symbol)
                ordered.append(sub.normalized_symbol)
        return ordered

    def matching(self, symbol: str, timeframe: str) -> List[StreamSubscription]:
        normalized = normalize_symbol(symbol)
        return [
            sub for sub in self._subscriptions.values()
            if sub.normalized_symbol == normalized and sub.timeframe == timeframe
        ]

    def dispatch(self, update: CandleUpdate) -> int:
        """Deliver a live update to every matching listener; returns the delivery count."""
        bar = update.to_bar()
        delivered = 0
        # Snapshot so a callback may unsubscribe while we iterate
        for sub in list(self.matching(update.symbol, update.tf)):
            try:
                sub.callback(bar)
            except Exception as e:
                logger.error(
                    "Bar listener raised",
                    symbol=sub.symbol,
                    timeframe=sub.timeframe,
                    error=str(e),
                )
                continue
            sub.last_bar_time = max(sub.last_bar_time, bar.time)
            delivered += 1
        return delivered
