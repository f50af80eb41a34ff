# Derived-state builder: loosely-typed backend records -> canonical positions and orders
import math
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from core.utils.exceptions import RecordValidationError

from .models import Order, OrderStatus, OrderType, ParentType, Position, Side


class _Missing:
    """Extractor result meaning "try the next alias"."""

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

Extractor = Callable[[Any], Any]
AliasRule = Tuple[Tuple[str, Extractor], ...]


def resolve_field(record: Mapping[str, Any], rule: AliasRule, default: Any = None) -> Any:
    """First alias present (not None) whose extractor yields a value wins."""
    for alias, extract in rule:
        raw = record.get(alias)
        if raw is None:
            continue
        value = extract(raw)
        if value is not MISSING:
            return value
    return default


def aliases(names: Sequence[str], extract: Extractor) -> AliasRule:
    return tuple((name, extract) for name in names)


# --- extractors -------------------------------------------------------------

def _to_float(raw: Any) -> Optional[float]:
    if isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def truthy_text(raw: Any) -> Any:
    """Non-empty string form; falsy values fall through to the next alias."""
    if raw in ("", 0, False):
        return MISSING
    return str(raw)


def upper_text(raw: Any) -> Any:
    text = truthy_text(raw)
    return text if text is MISSING else text.upper()


def nonzero_number(raw: Any) -> Any:
    """Numeric value; zero, blank and unparseable values fall through."""
    value = _to_float(raw)
    if value is None or value == 0:
        return MISSING
    return value


def any_number(raw: Any) -> Any:
    value = _to_float(raw)
    return MISSING if value is None else value


def bracket_level(raw: Any) -> Optional[float]:
    """TP/SL level: the first present alias decides; only finite positive levels count."""
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return None
    value = _to_float(raw)
    if value is None or value <= 0:
        return None
    return value


def int_or_missing(raw: Any) -> Any:
    value = _to_float(raw)
    if value is None or value != int(value):
        return MISSING
    return int(value)


# --- alias tables -----------------------------------------------------------

_TP_NAMES = (
    "takeProfit", "TakeProfit", "TP", "tp", "take_profit", "Take_Profit", "TAKE_PROFIT",
    "takeProfitPrice", "TakeProfitPrice", "tpPrice", "TPPrice", "PriceTP", "priceTP",
)
_SL_NAMES = (
    "stopLoss", "StopLoss", "SL", "sl", "stop_loss", "Stop_Loss", "STOP_LOSS",
    "stopLossPrice", "StopLossPrice", "slPrice", "SLPrice", "PriceSL", "priceSL",
)

POSITION_FIELDS: Dict[str, AliasRule] = {
    "id": aliases(("ticket", "Ticket", "PositionId", "id"), truthy_text),
    "type": aliases(("type", "Type"), truthy_text),
    "action": aliases(("Action", "action"), any_number),
    "symbol": aliases(("symbol", "Symbol"), upper_text),
    "open_price": aliases(("openPrice", "OpenPrice", "priceOpen", "PriceOpen", "price", "Price"), nonzero_number),
    "current_price": aliases(
        ("currentPrice", "CurrentPrice", "priceCurrent", "PriceCurrent", "price", "Price"), nonzero_number
    ),
    "volume_lots": aliases(("VolumeLots", "volumeLots"), any_number),
    "raw_volume": aliases(("Volume", "volume"), nonzero_number),
    "profit": aliases(("profit", "Profit", "pl", "PL", "pnl", "PNL"), nonzero_number),
    "take_profit": aliases(_TP_NAMES, bracket_level),
    "stop_loss": aliases(_SL_NAMES, bracket_level),
    "swap": aliases(("swap", "Swap"), nonzero_number),
    "commission": aliases(("commission", "Commission"), nonzero_number),
    "comment": aliases(("comment", "Comment"), truthy_text),
    "open_time": aliases(("openTime", "OpenTime", "TimeCreate", "timeCreate", "TimeSetup", "timeSetup"), truthy_text),
    "position_id": aliases(("PositionId", "positionId", "ticket", "Ticket"), int_or_missing),
}

ORDER_FIELDS: Dict[str, AliasRule] = {
    "id": aliases(("ticket", "Ticket", "OrderId", "id"), truthy_text),
    "type": aliases(("Type", "type"), lambda raw: raw),
    "action": aliases(("Action", "action"), any_number),
    "symbol": aliases(("symbol", "Symbol"), upper_text),
    "price": aliases(("openPrice", "OpenPrice", "priceOrder", "PriceOrder", "price", "Price"), nonzero_number),
    "volume": aliases(("volume", "Volume"), nonzero_number),
    "status": aliases(("status", "Status"), lambda raw: str(raw).strip().lower()),
    "take_profit": aliases(("takeProfit", "TakeProfit", "TP", "tp"), nonzero_number),
    "stop_loss": aliases(("stopLoss", "StopLoss", "SL", "sl"), nonzero_number),
    "parent_id": aliases(("parentId", "ParentId"), truthy_text),
    "parent_type": aliases(("parentType", "ParentType"), int_or_missing),
}

# MT5 numeric order types
MT5_ORDER_TYPES: Dict[int, Tuple[Side, OrderType]] = {
    0: (Side.BUY, OrderType.MARKET),
    1: (Side.SELL, OrderType.MARKET),
    2: (Side.BUY, OrderType.LIMIT),
    3: (Side.SELL, OrderType.LIMIT),
    4: (Side.BUY, OrderType.STOP),
    5: (Side.SELL, OrderType.STOP),
    6: (Side.BUY, OrderType.STOP_LIMIT),
    7: (Side.SELL, OrderType.STOP_LIMIT),
}

# Checked in order; first substring hit wins
TEXT_ORDER_TYPES: Tuple[Tuple[str, Side, OrderType], ...] = (
    ("Buy Limit", Side.BUY, OrderType.LIMIT),
    ("Sell Limit", Side.SELL, OrderType.LIMIT),
    ("Buy Stop", Side.BUY, OrderType.STOP),
    ("Sell Stop", Side.SELL, OrderType.STOP),
)

_BRACKET_TYPE_MARKERS = ("Take Profit", "Stop Loss", "TP", "SL")


def _side_from_action(action: Optional[float]) -> Side:
    return Side.BUY if action == 0 else Side.SELL


def _position_side(type_text: Optional[str], action: Optional[float]) -> Side:
    if type_text == "Buy":
        return Side.BUY
    if type_text == "Sell":
        return Side.SELL
    if action is not None:
        return _side_from_action(action)
    return Side.BUY if "buy" in (type_text or "").lower() else Side.SELL


def map_position(record: Mapping[str, Any], volume_divisor: float = 10000) -> Position:
    """
    Build a canonical Position from a backend record.

    Raises RecordValidationError when the record has no id or symbol, or a
    non-positive volume or open price.
    """
    if not isinstance(record, Mapping):
        raise RecordValidationError("Position record is not an object", field="record", value=record)

    position_id = resolve_field(record, POSITION_FIELDS["id"])
    symbol = resolve_field(record, POSITION_FIELDS["symbol"], "")
    open_price = resolve_field(record, POSITION_FIELDS["open_price"], 0.0)

    volume_lots = resolve_field(record, POSITION_FIELDS["volume_lots"])
    if volume_lots is None:
        raw_volume = resolve_field(record, POSITION_FIELDS["raw_volume"], 0.0)
        volume_lots = abs(raw_volume) / volume_divisor

    for field, value, ok in (
        ("id", position_id, bool(position_id)),
        ("symbol", symbol, bool(symbol)),
        ("volume", volume_lots, volume_lots > 0),
        ("open_price", open_price, open_price > 0),
    ):
        if not ok:
            raise RecordValidationError(
                f"Position {field} invalid", field=field, value=value, record=dict(record)
            )

    return Position(
        id=position_id,
        symbol=symbol,
        side=_position_side(
            resolve_field(record, POSITION_FIELDS["type"]),
            resolve_field(record, POSITION_FIELDS["action"]),
        ),
        volume_lots=volume_lots,
        open_price=open_price,
        current_price=resolve_field(record, POSITION_FIELDS["current_price"], open_price),
        take_profit=resolve_field(record, POSITION_FIELDS["take_profit"]),
        stop_loss=resolve_field(record, POSITION_FIELDS["stop_loss"]),
        profit=resolve_field(record, POSITION_FIELDS["profit"], 0.0),
        swap=resolve_field(record, POSITION_FIELDS["swap"], 0.0),
        commission=resolve_field(record, POSITION_FIELDS["commission"], 0.0),
        comment=resolve_field(record, POSITION_FIELDS["comment"]),
        open_time=resolve_field(record, POSITION_FIELDS["open_time"]),
        position_id=resolve_field(record, POSITION_FIELDS["position_id"]),
    )


def _order_side_and_type(type_field: Any, action: Optional[float]) -> Tuple[Side, OrderType]:
    code = _to_float(type_field) if not isinstance(type_field, str) or type_field.strip() else None
    if code is not None:
        if code in MT5_ORDER_TYPES:
            return MT5_ORDER_TYPES[int(code)]
        return _side_from_action(action), OrderType.LIMIT

    type_text = str(type_field or "")
    for marker, side, order_type in TEXT_ORDER_TYPES:
        if marker in type_text:
            return side, order_type
    return _side_from_action(action), OrderType.LIMIT


def _order_status(type_text: str, status_text: Optional[str]) -> OrderStatus:
    status = OrderStatus.WORKING
    if any(marker in type_text for marker in _BRACKET_TYPE_MARKERS):
        status = OrderStatus.INACTIVE
    if status_text in ("1", "inactive"):
        status = OrderStatus.INACTIVE
    elif status_text in ("0", "working"):
        status = OrderStatus.WORKING
    return status


def map_order(record: Mapping[str, Any], volume_divisor: float = 100) -> Order:
    """
    Build a canonical Order from a backend pending-order record.

    Raises RecordValidationError when the record has no id or symbol, or a
    non-positive volume.
    """
    if not isinstance(record, Mapping):
        raise RecordValidationError("Order record is not an object", field="record", value=record)

    order_id = resolve_field(record, ORDER_FIELDS["id"])
    symbol = resolve_field(record, ORDER_FIELDS["symbol"], "")
    qty = resolve_field(record, ORDER_FIELDS["volume"], 0.0) / volume_divisor

    for field, value, ok in (
        ("id", order_id, bool(order_id)),
        ("symbol", symbol, bool(symbol)),
        ("volume", qty, qty > 0),
    ):
        if not ok:
            raise RecordValidationError(f"Order {field} invalid", field=field, value=value, record=dict(record))

    type_field = resolve_field(record, ORDER_FIELDS["type"])
    side, order_type = _order_side_and_type(type_field, resolve_field(record, ORDER_FIELDS["action"]))
    price = resolve_field(record, ORDER_FIELDS["price"], 0.0)

    parent_id = resolve_field(record, ORDER_FIELDS["parent_id"])
    parent_type_code = resolve_field(record, ORDER_FIELDS["parent_type"])
    parent_type = ParentType(parent_type_code) if parent_type_code in (1, 2) else None
    standalone = parent_id is None and parent_type is None

    return Order(
        id=order_id,
        symbol=symbol,
        side=side,
        type=order_type,
        qty=qty,
        status=_order_status(str(type_field or ""), resolve_field(record, ORDER_FIELDS["status"])),
        limit_price=price if order_type == OrderType.LIMIT else None,
        stop_price=price if order_type == OrderType.STOP else None,
        price=price or None,
        take_profit=resolve_field(record, ORDER_FIELDS["take_profit"]),
        stop_loss=resolve_field(record, ORDER_FIELDS["stop_loss"]),
        parent_id=parent_id,
        parent_type=parent_type,
        support_modify=standalone,
        support_cancel=standalone,
    )


def extract_order_id(data: Any) -> Optional[str]:
    """New order id from a placement response body."""
    if not isinstance(data, Mapping):
        return None
    return resolve_field(data, aliases(("OrderId", "orderId", "id", "PositionId", "positionId"), truthy_text))
