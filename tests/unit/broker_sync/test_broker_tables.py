from services.broker_sync.brackets import build_brackets
from services.broker_sync.models import Order, OrderStatus, OrderType, Position, Side
from services.broker_sync.tables import BrokerTables


def make_position(pid="100", **overrides):
    values = dict(id=pid, symbol="EURUSD", side=Side.BUY, volume_lots=1.0,
                  open_price=1.1, current_price=1.1)
    values.update(overrides)
    return Position(**values)


def make_order(oid="200", **overrides):
    values = dict(id=oid, symbol="GBPUSD", side=Side.BUY, type=OrderType.LIMIT, qty=1.0, limit_price=1.25)
    values.update(overrides)
    return Order(**values)


def test_replace_reports_first_appearance():
    tables = BrokerTables()
    position = make_position(take_profit=1.105)

    diff = tables.replace([position], [make_order()], build_brackets(position))

    assert [p.id for p in diff.upserted_positions] == ["100"]
    assert [o.id for o in diff.upserted_orders] == ["200"]
    assert [b.id for b in diff.upserted_brackets] == ["100_TP"]
    assert tables.order("100_TP") is not None
    assert [o.id for o in tables.orders] == ["200"]


def test_unchanged_snapshot_is_empty_diff():
    tables = BrokerTables()
    position = make_position(take_profit=1.105)
    tables.replace([position], [make_order()], build_brackets(position))

    again = make_position(take_profit=1.105)
    diff = tables.replace([again], [make_order()], build_brackets(again))

    assert diff.is_empty


def test_removed_entities_are_reported():
    tables = BrokerTables()
    position = make_position(take_profit=1.105)
    tables.replace([position], [make_order()], build_brackets(position))

    diff = tables.replace([], [], [])

    assert [p.id for p in diff.removed_positions] == ["100"]
    assert [o.id for o in diff.removed_orders] == ["200"]
    assert [b.id for b in diff.removed_brackets] == ["100_TP"]
    assert tables.positions == []
    assert tables.order("100_TP") is None


def test_brackets_for_returns_working_or_inactive():
    tables = BrokerTables()
    position = make_position(take_profit=1.105, stop_loss=1.095)
    tables.replace([position], [], build_brackets(position))
    canceled = tables.order("100_SL").model_copy(update={"status": OrderStatus.CANCELED})
    tables.put_order(canceled)

    assert [b.id for b in tables.brackets_for("100")] == ["100_TP"]


def test_put_order_keeps_brackets_out_of_regular_table():
    tables = BrokerTables()
    tables.put_order(make_order(oid="300"))
    tables.put_order(make_order(oid="100_TP", parent_id="100"))

    assert [o.id for o in tables.orders] == ["300"]
    assert [b.id for b in tables.brackets] == ["100_TP"]
    assert tables.remove_order("300").id == "300"
    assert tables.orders == []
