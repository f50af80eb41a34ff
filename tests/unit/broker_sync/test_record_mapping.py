import pytest

from core.utils.exceptions import RecordValidationError
from services.broker_sync.mapping import (
    MISSING,
    aliases,
    bracket_level,
    extract_order_id,
    map_order,
    map_position,
    nonzero_number,
    resolve_field,
)
from services.broker_sync.models import OrderStatus, OrderType, ParentType, Side
from tests.mocks.fakes import order_record, position_record


def test_first_matching_alias_wins():
    rule = aliases(("a", "b", "c"), nonzero_number)
    assert resolve_field({"a": 0, "b": "2.5", "c": 3}, rule) == 2.5
    assert resolve_field({"c": 3}, rule) == 3.0
    assert resolve_field({}, rule, default=7) == 7


def test_bracket_level_requires_finite_positive():
    assert bracket_level("1.105") == 1.105
    assert bracket_level(0) is None
    assert bracket_level(-1) is None
    assert bracket_level("nan") is None
    assert bracket_level("  ") is None
    assert nonzero_number("x") is MISSING


def test_map_position_canonical_record():
    position = map_position(position_record(TakeProfit=1.105, StopLoss=1.095, Swap=-0.4))

    assert position.id == "100"
    assert position.symbol == "EURUSD"
    assert position.side == Side.BUY
    assert position.volume_lots == 1.0
    assert position.open_price == 1.1
    assert position.current_price == 1.102
    assert position.take_profit == 1.105
    assert position.stop_loss == 1.095
    assert position.profit == 20.0
    assert position.swap == -0.4
    assert position.position_id == 100


def test_map_position_alias_variants():
    record = {
        "ticket": "777",
        "symbol": "xauusd",
        "Action": 1,
        "volumeLots": 0.5,
        "openPrice": 1900.5,
        "pl": -12.5,
        "tp": 0,
        "sl": "1890",
    }
    position = map_position(record)

    assert position.id == "777"
    assert position.symbol == "XAUUSD"
    assert position.side == Side.SELL
    assert position.volume_lots == 0.5
    assert position.current_price == 1900.5
    assert position.profit == -12.5
    assert position.take_profit is None
    assert position.stop_loss == 1890.0


def test_action_zero_means_buy():
    record = position_record(Action=0)
    del record["Type"]
    assert map_position(record).side == Side.BUY


@pytest.mark.parametrize("overrides,field", [
    ({"PositionId": None}, "id"),
    ({"Symbol": ""}, "symbol"),
    ({"Volume": 0}, "volume"),
    ({"PriceOpen": 0}, "open_price"),
])
def test_invalid_position_records_raise(overrides, field):
    with pytest.raises(RecordValidationError) as exc_info:
        map_position(position_record(**overrides))
    assert exc_info.value.field == field


def test_map_order_mt5_numeric_type():
    order = map_order(order_record(Type=5, PriceOrder=1.2))

    assert order.id == "200"
    assert order.side == Side.SELL
    assert order.type == OrderType.STOP
    assert order.stop_price == 1.2
    assert order.limit_price is None
    assert order.qty == 1.0
    assert order.status == OrderStatus.WORKING
    assert order.support_modify is True
    assert order.support_cancel is True


def test_map_order_text_type_and_limit_price():
    order = map_order(order_record(Type="Buy Limit", Volume=50))

    assert order.side == Side.BUY
    assert order.type == OrderType.LIMIT
    assert order.limit_price == 1.25
    assert order.qty == 0.5


def test_map_order_bracket_markers_are_inactive():
    order = map_order(order_record(Type="Take Profit", ParentId="100", ParentType=2))

    assert order.status == OrderStatus.INACTIVE
    assert order.parent_id == "100"
    assert order.parent_type == ParentType.POSITION
    assert order.support_modify is False


def test_map_order_status_field_overrides():
    assert map_order(order_record(Status="1")).status == OrderStatus.INACTIVE
    assert map_order(order_record(Status="working")).status == OrderStatus.WORKING


def test_invalid_order_records_raise():
    with pytest.raises(RecordValidationError):
        map_order(order_record(Volume=0))
    with pytest.raises(RecordValidationError):
        map_order(["not", "a", "record"])


def test_extract_order_id():
    assert extract_order_id({"OrderId": 42}) == "42"
    assert extract_order_id({"orderId": 0, "PositionId": 9}) == "9"
    assert extract_order_id(None) is None
