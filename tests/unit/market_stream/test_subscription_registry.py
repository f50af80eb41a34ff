from services.market_stream.models import CandleUpdate
from services.market_stream.registry import SubscriptionRegistry


def make_update(symbol="BTCUSD", tf="M1", t=1700000000, close=101.0):
    return CandleUpdate.model_validate({
        "type": "candle_update", "symbol": symbol, "tf": tf,
        "t": t, "o": 100.0, "h": 102.0, "l": 99.0, "c": close, "v": 12, "isFinal": False,
    })


def test_update_fans_out_to_every_matching_listener():
    registry = SubscriptionRegistry()
    first, second = [], []
    registry.add("BTCUSDm", "1", first.append)
    registry.add("BTCUSD", "1", second.append)

    delivered = registry.dispatch(make_update(symbol="BTCUSD", tf="M1"))

    assert delivered == 2
    assert first[0].close == 101.0
    assert second[0].time == 1700000000


def test_update_skips_other_timeframes_and_symbols():
    registry = SubscriptionRegistry()
    m1, h1, eth = [], [], []
    registry.add("BTCUSDm", "1", m1.append)
    registry.add("BTCUSDm", "60", h1.append)
    registry.add("ETHUSDm", "1", eth.append)

    registry.dispatch(make_update(symbol="BTCUSD", tf="M1"))

    assert len(m1) == 1
    assert h1 == []
    assert eth == []


def test_symbols_is_ordered_union():
    registry = SubscriptionRegistry()
    registry.add("BTCUSDm", "1", lambda bar: None)
    registry.add("EURUSD.r", "5", lambda bar: None)
    registry.add("btcusd", "60", lambda bar: None)

    assert registry.symbols() == ["BTCUSD", "EURUSD"]


def test_remove_stops_delivery_for_that_listener_only():
    registry = SubscriptionRegistry()
    kept, removed = [], []
    registry.add("BTCUSDm", "1", kept.append)
    token = registry.add("BTCUSDm", "1", removed.append)

    assert registry.remove(token) is True
    assert registry.remove(token) is False
    registry.dispatch(make_update())

    assert len(kept) == 1
    assert removed == []


def test_failing_listener_does_not_block_others():
    registry = SubscriptionRegistry()
    received = []

    def broken(bar):
        raise RuntimeError("listener bug")

    registry.add("BTCUSD", "1", broken)
    sub = registry.add("BTCUSD", "1", received.append)

    assert registry.dispatch(make_update(t=1700000060)) == 1
    assert len(received) == 1
    assert sub.last_bar_time == 1700000060
