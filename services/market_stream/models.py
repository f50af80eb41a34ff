# Market Stream Service Models
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Literal, Optional, Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class ConnectionState(str, Enum):
    """Lifecycle of the single duplex stream; cycles for the process lifetime"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"


class Bar(BaseModel):
    """One OHLCV bar, from a live update or a history snapshot"""
    model_config = ConfigDict(frozen=True)

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class CandlePayload(BaseModel):
    """Compact candle as carried inside a candle_snapshot frame"""
    t: int
    o: float
    h: float
    l: float  # noqa: E741
    c: float
    v: float = 0.0

    def to_bar(self) -> Bar:
        return Bar(time=self.t, open=self.o, high=self.h, low=self.l, close=self.c, volume=self.v)


class CandleUpdate(CandlePayload):
    """Unsolicited live bar push"""
    type: Literal["candle_update"]
    symbol: str
    tf: str
    is_final: bool = Field(default=False, alias="isFinal")


class CandleSnapshot(BaseModel):
    """Response to a candle_history request"""
    type: Literal["candle_snapshot"]
    symbol: str
    tf: str
    ts: Optional[int] = None
    candles: List[CandlePayload] = []


BarCallback = Callable[[Bar], None]
HistorySuccess = Callable[[List[Bar], Dict[str, Any]], None]
HistoryError = Callable[[str], None]


@dataclass(eq=False)
class StreamSubscription:
    """One listener's interest in a symbol/timeframe; identity is per listener"""
    symbol: str
    normalized_symbol: str
    timeframe: str
    callback: BarCallback
    last_bar_time: int = 0


@dataclass
class HistoryRequest:
    """Pending one-shot snapshot request, keyed by normalized symbol and timeframe"""
    key: str
    on_success: HistorySuccess
    on_error: HistoryError
    requested_at: datetime = field(default_factory=datetime.now)


class ConnectionStats(BaseModel):
    """WebSocket connection statistics"""
    connection_attempts: int = 0
    successful_connections: int = 0
    disconnections: int = 0
    frames_received: int = 0
    frames_dropped: int = 0
    last_connection_time: Optional[datetime] = None
    last_disconnection_time: Optional[datetime] = None
    current_status: ConnectionState = ConnectionState.DISCONNECTED
