from services.market_stream.history import HistoryRequestTracker
from services.market_stream.models import CandleSnapshot


def make_snapshot(candles, symbol="BTCUSD", tf="M1"):
    return CandleSnapshot.model_validate({
        "type": "candle_snapshot", "symbol": symbol, "tf": tf, "ts": 1, "candles": candles,
    })


def candle(t, c=1.0):
    return {"t": t, "o": c, "h": c, "l": c, "c": c, "v": 1}


def test_later_request_orphans_earlier_one():
    tracker = HistoryRequestTracker()
    earlier, later = [], []
    tracker.register("BTCUSD", "M1", lambda bars, meta: earlier.append(bars), lambda err: None)
    tracker.register("BTCUSDm", "M1", lambda bars, meta: later.append(bars), lambda err: None)

    assert len(tracker) == 1
    assert tracker.resolve(make_snapshot([candle(60)])) is True

    assert earlier == []
    assert len(later) == 1


def test_snapshot_bars_sorted_ascending_and_request_removed():
    tracker = HistoryRequestTracker()
    result = {}

    def on_success(bars, meta):
        result["bars"] = bars
        result["meta"] = meta

    key = tracker.register("BTCUSD", "M1", on_success, lambda err: None)
    tracker.resolve(make_snapshot([candle(180), candle(60), candle(120)]))

    assert [b.time for b in result["bars"]] == [60, 120, 180]
    assert result["meta"] == {"no_data": False}
    assert key not in tracker
    # A second snapshot for the same key has nobody to resolve
    assert tracker.resolve(make_snapshot([candle(60)])) is False


def test_empty_snapshot_reports_no_data():
    tracker = HistoryRequestTracker()
    result = []
    tracker.register("EURUSD", "H1", lambda bars, meta: result.append(meta), lambda err: None)

    tracker.resolve(make_snapshot([], symbol="EURUSD", tf="H1"))

    assert result == [{"no_data": True}]


def test_discard_drops_pending_request():
    tracker = HistoryRequestTracker()
    calls = []
    key = tracker.register("EURUSD", "M5", lambda bars, meta: calls.append(bars), lambda err: None)

    tracker.discard(key)

    assert tracker.resolve(make_snapshot([candle(1)], symbol="EURUSD", tf="M5")) is False
    assert calls == []
