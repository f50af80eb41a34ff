# Synthetic bracket orders derived from a position's TP/SL levels
from typing import List, Optional

from .models import BracketKind, Order, OrderStatus, OrderType, ParentType, Position, Side


def bracket_id(position_id: str, kind: BracketKind) -> str:
    return f"{position_id}_{kind.value}"


def parse_bracket_id(order_id: str) -> Optional[tuple]:
    """Split '{positionId}_TP' into (positionId, kind); None for other ids."""
    for kind in BracketKind:
        suffix = f"_{kind.value}"
        if order_id.endswith(suffix) and len(order_id) > len(suffix):
            return order_id[:-len(suffix)], kind
    return None


def is_bracket(order: Order) -> bool:
    """Brackets never live in the regular pending-order table."""
    if order.parent_id is not None or order.parent_type is not None:
        return True
    if order.status == OrderStatus.INACTIVE:
        return True
    return parse_bracket_id(order.id) is not None


def bracket_kind(order: Order) -> BracketKind:
    parsed = parse_bracket_id(order.id)
    if parsed is not None:
        return parsed[1]
    return BracketKind.STOP_LOSS if order.type == OrderType.STOP else BracketKind.TAKE_PROFIT


def take_profit_bracket(position: Position) -> Order:
    return Order(
        id=bracket_id(position.id, BracketKind.TAKE_PROFIT),
        symbol=position.symbol,
        side=position.side.opposite(),
        type=OrderType.LIMIT,
        qty=position.volume_lots,
        status=OrderStatus.WORKING,
        limit_price=position.take_profit,
        parent_id=position.id,
        parent_type=ParentType.POSITION,
        support_modify=True,
    )


def stop_loss_bracket(position: Position) -> Order:
    return Order(
        id=bracket_id(position.id, BracketKind.STOP_LOSS),
        symbol=position.symbol,
        side=position.side.opposite(),
        type=OrderType.STOP,
        qty=position.volume_lots,
        status=OrderStatus.WORKING,
        stop_price=position.stop_loss,
        price=position.stop_loss,
        parent_id=position.id,
        parent_type=ParentType.POSITION,
        support_modify=True,
    )


def projected_pl(trigger_price: float, position: Position, units_per_lot: float) -> float:
    """P/L the position would show if the bracket fired; display only."""
    sign = -1 if position.side == Side.SELL else 1
    return (trigger_price - position.open_price) * position.volume_lots * units_per_lot * sign


def annotate_pl(bracket: Order, position: Position, units_per_lot: float,
                display_multiplier: float = 1.0) -> Order:
    trigger = bracket.trigger_price
    if trigger:
        raw = projected_pl(trigger, position, units_per_lot)
        bracket.projected_pl = raw
        bracket.pl = raw * display_multiplier
    else:
        bracket.projected_pl = None
        bracket.pl = position.profit * display_multiplier
    return bracket


def build_brackets(position: Position, units_per_lot: float = 10000,
                   display_multiplier: float = 1.0) -> List[Order]:
    """Regenerate the full bracket set for one position."""
    brackets: List[Order] = []
    if position.take_profit is not None and position.take_profit > 0:
        brackets.append(take_profit_bracket(position))
    if position.stop_loss is not None and position.stop_loss > 0:
        brackets.append(stop_loss_bracket(position))
    return [annotate_pl(b, position, units_per_lot, display_multiplier) for b in brackets]
