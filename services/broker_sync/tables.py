# In-memory position and order tables owned by one engine instance
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .brackets import is_bracket
from .models import Order, OrderStatus, Position


@dataclass
class TableDiff:
    """Entity transitions produced by replacing the tables with a snapshot"""
    upserted_positions: List[Position] = field(default_factory=list)
    removed_positions: List[Position] = field(default_factory=list)
    upserted_orders: List[Order] = field(default_factory=list)
    removed_orders: List[Order] = field(default_factory=list)
    upserted_brackets: List[Order] = field(default_factory=list)
    removed_brackets: List[Order] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any((
            self.upserted_positions, self.removed_positions,
            self.upserted_orders, self.removed_orders,
            self.upserted_brackets, self.removed_brackets,
        ))


def _changed(old_by_id: Dict[str, object], new_items: Iterable) -> List:
    return [item for item in new_items if old_by_id.get(item.id) != item]


class BrokerTables:
    """
    Positions, regular pending orders and an id index over regular and
    bracket orders. Snapshots replace the tables wholesale.
    """

    def __init__(self):
        self.position_by_id: Dict[str, Position] = {}
        self.regular_orders: Dict[str, Order] = {}
        self.order_by_id: Dict[str, Order] = {}

    # --- queries ---------------------------------------------------------

    @property
    def positions(self) -> List[Position]:
        return list(self.position_by_id.values())

    @property
    def orders(self) -> List[Order]:
        return list(self.regular_orders.values())

    @property
    def brackets(self) -> List[Order]:
        return [o for o in self.order_by_id.values() if o.id not in self.regular_orders]

    def position(self, position_id: str) -> Optional[Position]:
        return self.position_by_id.get(position_id)

    def order(self, order_id: str) -> Optional[Order]:
        return self.order_by_id.get(order_id)

    def brackets_for(self, parent_id: str) -> List[Order]:
        return [
            o for o in self.brackets
            if o.parent_id == parent_id and o.status in (OrderStatus.WORKING, OrderStatus.INACTIVE)
        ]

    # --- snapshot replacement -------------------------------------------

    def replace(self, positions: List[Position], regular_orders: List[Order],
                brackets: List[Order]) -> TableDiff:
        new_positions = {p.id: p for p in positions}
        new_regular = {o.id: o for o in regular_orders}
        new_brackets = {b.id: b for b in brackets}
        old_brackets = {b.id: b for b in self.brackets}

        diff = TableDiff(
            upserted_positions=_changed(self.position_by_id, new_positions.values()),
            removed_positions=[p for pid, p in self.position_by_id.items() if pid not in new_positions],
            upserted_orders=_changed(self.regular_orders, new_regular.values()),
            removed_orders=[o for oid, o in self.regular_orders.items() if oid not in new_regular],
            upserted_brackets=_changed(old_brackets, new_brackets.values()),
            removed_brackets=[b for bid, b in old_brackets.items() if bid not in new_brackets],
        )

        self.position_by_id = new_positions
        self.regular_orders = new_regular
        self.order_by_id = {**new_regular, **new_brackets}
        return diff

    # --- optimistic patches ---------------------------------------------

    def put_position(self, position: Position) -> None:
        self.position_by_id[position.id] = position

    def remove_position(self, position_id: str) -> Optional[Position]:
        return self.position_by_id.pop(position_id, None)

    def put_order(self, order: Order) -> None:
        self.order_by_id[order.id] = order
        if is_bracket(order):
            self.regular_orders.pop(order.id, None)
        else:
            self.regular_orders[order.id] = order

    def remove_order(self, order_id: str) -> Optional[Order]:
        self.regular_orders.pop(order_id, None)
        return self.order_by_id.pop(order_id, None)

    def clear(self) -> None:
        self.position_by_id = {}
        self.regular_orders = {}
        self.order_by_id = {}
