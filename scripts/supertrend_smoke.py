from __future__ import annotations

from spread_backtester.indicators import supertrend
from spread_backtester.models import Candle


def candle(idx: int, close: float, spread: float = 1.0) -> Candle:
    return Candle(
        ts_ms=idx * 300_000,
        open=close,
        high=close + spread,
        low=close - spread,
        close=close,
        volume=1.0,
    )


def falling_then_rising():
    """Twenty bars down, then twenty bars up: one sell flip, then one buy flip."""
    closes = [100.0 - i for i in range(20)] + [80.0 + 2 * i for i in range(20)]
    return [candle(i, c) for i, c in enumerate(closes)]


def main():
    seq = falling_then_rising()
    states = supertrend(seq, atr_period=10, multiplier=3.0, use_wilder=True)
    for c, st in zip(seq, states):
        if st is None:
            continue
        flag = "BUY" if st.buy_signal else ("SELL" if st.sell_signal else "")
        if flag:
            print(f"idx={c.ts_ms // 300_000} close={c.close:g} trend={st.trend} {flag} line={st.line:.2f}")
    seeded = [s for s in states if s is not None]
    print(f"seeded={len(seeded)} final_trend={seeded[-1].trend if seeded else None}")


if __name__ == "__main__":
    main()
