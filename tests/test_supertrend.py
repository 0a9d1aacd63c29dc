import math

import pytest

from spread_backtester.indicators import (
    atr_series,
    compute_indicator,
    supertrend,
    true_range_series,
)
from spread_backtester.models import Candle


def _c(idx: int, close: float, spread: float = 1.0) -> Candle:
    return Candle(
        ts_ms=idx * 300_000,
        open=close,
        high=close + spread,
        low=close - spread,
        close=close,
    )


def _signals(states):
    buys = [i for i, s in enumerate(states) if s is not None and s.buy_signal]
    sells = [i for i, s in enumerate(states) if s is not None and s.sell_signal]
    return buys, sells


def test_true_range_first_candle_uses_own_close():
    candles = [_c(0, 100), _c(1, 104)]
    tr = true_range_series(candles)
    assert tr[0] == 2.0
    # high 105 vs prev close 100
    assert tr[1] == 5.0


def test_atr_seed_and_reset_on_gap():
    tr = [2.0, 2.0, 2.0, None, 2.0, 2.0, 2.0, 4.0]
    atr = atr_series(tr, 3)
    assert atr[:2] == [None, None]
    assert atr[2] == 2.0
    assert atr[3] is None
    assert atr[4] is None and atr[5] is None
    assert atr[6] == 2.0
    assert atr[7] == pytest.approx((2.0 * 2 + 4.0) / 3)


def test_rising_after_flat_seed_never_flips():
    closes = [100.0] * 10 + [100.0 + i for i in range(1, 21)]
    states = supertrend([_c(i, c) for i, c in enumerate(closes)], atr_period=10, multiplier=3.0, use_wilder=True)

    assert all(s is None for s in states[:9])
    seeded = [s for s in states if s is not None]
    assert len(seeded) == len(closes) - 9
    assert all(s.trend == "UP" for s in seeded)
    assert _signals(states) == ([], [])


def test_falling_then_rising_flips_once_each_way():
    closes = [100.0 - i for i in range(20)] + [80.0 + 2 * i for i in range(20)]
    states = supertrend([_c(i, c) for i, c in enumerate(closes)], atr_period=10, multiplier=3.0)

    buys, sells = _signals(states)
    assert sells == [16]
    assert buys == [24]
    assert states[-1].trend == "UP"
    assert states[-1].line == states[-1].lower_band


def test_trend_changes_iff_signal():
    closes = [100 + 12 * math.sin(i / 6.0) + (i % 5) * 0.7 for i in range(300)]
    states = supertrend([_c(i, c, spread=1.5) for i, c in enumerate(closes)], atr_period=7, multiplier=2.0)

    prev = None
    flips = 0
    for s in states:
        if s is None:
            continue
        assert not (s.buy_signal and s.sell_signal)
        changed = prev is not None and prev.trend != s.trend
        assert changed == (s.buy_signal or s.sell_signal)
        if s.buy_signal:
            assert s.trend == "UP"
        if s.sell_signal:
            assert s.trend == "DOWN"
        flips += int(changed)
        prev = s
    assert flips > 2


def test_gap_reseeds_and_carries_trend():
    candles = [_c(i, 100.0 + i) for i in range(30)]
    candles[15] = Candle(ts_ms=15 * 300_000, open=float("nan"), high=float("nan"), low=float("nan"), close=float("nan"))
    states = supertrend(candles, atr_period=10, multiplier=3.0)

    assert states[14] is not None and states[14].trend == "UP"
    assert all(s is None for s in states[15:25])
    assert states[25] is not None
    assert states[25].trend == "UP"
    assert not states[25].buy_signal and not states[25].sell_signal


def test_supertrend_rejects_bad_params():
    candles = [_c(i, 100.0) for i in range(5)]
    with pytest.raises(ValueError):
        supertrend(candles, atr_period=0)
    with pytest.raises(ValueError):
        supertrend(candles, multiplier=0)
    assert supertrend([], atr_period=10) == []


def test_generic_indicator_registry():
    candles = [_c(i, float(i + 1)) for i in range(5)]
    sma = compute_indicator("sma", candles, length=3)
    assert sma[:2] == [None, None]
    assert sma[2] == 2.0 and sma[4] == 4.0
    assert len(compute_indicator("ema", candles, length=3)) == 5
    rsi = compute_indicator("RSI", candles, length=2)
    assert rsi[2] == 100.0
    with pytest.raises(ValueError):
        compute_indicator("macd", candles)
