from .connection import StreamConnection
from .datafeed import RealtimeDatafeed
from .history import HistoryRequestTracker
from .models import Bar, ConnectionState, StreamSubscription
from .registry import SubscriptionRegistry
from .symbols import normalize_symbol, resolve_timeframe

__all__ = [
    "Bar",
    "ConnectionState",
    "HistoryRequestTracker",
    "RealtimeDatafeed",
    "StreamConnection",
    "StreamSubscription",
    "SubscriptionRegistry",
    "normalize_symbol",
    "resolve_timeframe",
]
