# Broker Sync Service Models
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class Side(IntEnum):
    BUY = 1
    SELL = -1

    def opposite(self) -> "Side":
        return Side.SELL if self == Side.BUY else Side.BUY


class OrderType(IntEnum):
    LIMIT = 1
    MARKET = 2
    STOP = 3
    STOP_LIMIT = 4


class OrderStatus(IntEnum):
    CANCELED = 1
    FILLED = 2
    INACTIVE = 3
    PLACING = 4
    REJECTED = 5
    WORKING = 6


class ParentType(IntEnum):
    ORDER = 1
    POSITION = 2


class BracketKind(str, Enum):
    TAKE_PROFIT = "TP"
    STOP_LOSS = "SL"


class SyncState(str, Enum):
    """Reconciliation cycle guard"""
    IDLE = "idle"
    FETCHING = "fetching"


class Position(BaseModel):
    """Open position as rebuilt from an account snapshot"""
    model_config = ConfigDict(validate_assignment=True)

    id: str
    symbol: str
    side: Side
    volume_lots: float
    open_price: float
    current_price: float
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    profit: float = 0.0
    swap: float = 0.0
    commission: float = 0.0
    comment: Optional[str] = None
    open_time: Optional[str] = None
    position_id: Optional[int] = None

    def is_valid(self) -> bool:
        return bool(self.id) and bool(self.symbol) and self.volume_lots > 0 and self.open_price > 0


class Order(BaseModel):
    """Regular pending order or synthetic bracket (parent_id set)"""
    model_config = ConfigDict(validate_assignment=True)

    id: str
    symbol: str
    side: Side
    type: OrderType
    qty: float
    status: OrderStatus = OrderStatus.WORKING
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    price: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    parent_id: Optional[str] = None
    parent_type: Optional[ParentType] = None
    support_modify: bool = False
    support_cancel: bool = False
    # Display-only P/L at the trigger price (brackets only)
    projected_pl: Optional[float] = None
    pl: Optional[float] = None

    @property
    def trigger_price(self) -> Optional[float]:
        return self.limit_price or self.stop_price


class Brackets(BaseModel):
    """Requested TP/SL levels; a missing side keeps the current level"""
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None


class PreOrder(BaseModel):
    """Order ticket submitted by the host"""
    symbol: str
    side: Side
    type: OrderType
    qty: float
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None


class PlaceOrderResult(BaseModel):
    order_id: str


class MutationResult(BaseModel):
    """Success/message envelope returned by every mutation call"""
    success: bool
    message: Optional[str] = None
    data: Any = None
    status: Optional[int] = None
