from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional, Sequence
import math

from .models import Candle, SupertrendState, Trend

# Any indicator: pure fn(candles, **params) -> same-length list, None until seeded.
IndicatorFn = Callable[..., List[Optional[Any]]]


def _finite(*xs: float) -> bool:
    return all(isinstance(x, (int, float)) and math.isfinite(x) for x in xs)


def ema_next(prev_ema: Optional[float], x: float, length: int) -> float:
    if length <= 1:
        return x
    alpha = 2.0 / (length + 1.0)
    return x if prev_ema is None else (alpha * x + (1.0 - alpha) * prev_ema)


def sma(values: List[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def true_range_series(candles: Sequence[Candle]) -> List[Optional[float]]:
    """TR per candle. The first candle, and the one after a gap, use their own close as prev close."""
    out: List[Optional[float]] = []
    prev_close: Optional[float] = None
    for c in candles:
        if not _finite(c.high, c.low, c.close):
            out.append(None)
            prev_close = None
            continue
        pc = prev_close if prev_close is not None else c.close
        out.append(true_range(c.high, c.low, pc))
        prev_close = c.close
    return out


def atr_series(tr: Sequence[Optional[float]], period: int, *, use_wilder: bool = True) -> List[Optional[float]]:
    """Wilder (RMA seeded by an SMA) or plain SMA of TR.

    A None TR resets the seed: the series stays None until `period`
    consecutive valid TRs are available again.
    """
    p = int(period)
    if p < 1:
        raise ValueError("ATR period must be a positive integer")

    out: List[Optional[float]] = []
    window: List[float] = []
    prev: Optional[float] = None
    for v in tr:
        if v is None:
            window = []
            prev = None
            out.append(None)
            continue
        if use_wilder and prev is not None:
            prev = (prev * (p - 1) + v) / p
            out.append(prev)
            continue
        window.append(v)
        if len(window) > p:
            window.pop(0)
        if len(window) < p:
            out.append(None)
            continue
        val = sum(window) / p
        if use_wilder:
            prev = val
        out.append(val)
    return out


def supertrend(
    candles: Sequence[Candle],
    atr_period: int = 10,
    multiplier: float = 3.0,
    use_wilder: bool = True,
) -> List[Optional[SupertrendState]]:
    """Supertrend over HL2 with the usual band ratchet.

    Final lower band ratchets up while the previous close held above it, the
    final upper band ratchets down while the previous close held below it.
    DOWN -> UP when close breaks above the previous upper band, UP -> DOWN
    when close breaks below the previous lower band. The first seeded bar is
    UP with no signal; trend is carried across gaps.
    """
    p = int(atr_period)
    if p < 1:
        raise ValueError("atr_period must be a positive integer")
    m = float(multiplier)
    if not math.isfinite(m) or m <= 0:
        raise ValueError("multiplier must be a positive number")

    n = len(candles)
    if n == 0:
        return []

    atr = atr_series(true_range_series(candles), p, use_wilder=use_wilder)

    out: List[Optional[SupertrendState]] = []
    lower: Optional[float] = None
    upper: Optional[float] = None
    trend: Optional[Trend] = None
    prev_close: Optional[float] = None

    for i, c in enumerate(candles):
        a = atr[i]
        if a is None or not _finite(c.high, c.low, c.close):
            lower = None
            upper = None
            prev_close = c.close if _finite(c.close) else None
            out.append(None)
            continue

        src = (c.high + c.low) / 2.0
        basic_lower = src - m * a
        basic_upper = src + m * a

        prev_lower = lower if lower is not None else basic_lower
        prev_upper = upper if upper is not None else basic_upper
        pc = prev_close if prev_close is not None else c.close

        final_lower = max(basic_lower, prev_lower) if pc > prev_lower else basic_lower
        final_upper = min(basic_upper, prev_upper) if pc < prev_upper else basic_upper

        prev_trend = trend
        cur: Trend = prev_trend or "UP"
        if cur == "DOWN" and c.close > prev_upper:
            cur = "UP"
        elif cur == "UP" and c.close < prev_lower:
            cur = "DOWN"

        buy = prev_trend == "DOWN" and cur == "UP"
        sell = prev_trend == "UP" and cur == "DOWN"

        out.append(SupertrendState(
            atr=a,
            upper_band=final_upper,
            lower_band=final_lower,
            line=final_lower if cur == "UP" else final_upper,
            trend=cur,
            buy_signal=buy,
            sell_signal=sell,
        ))
        lower, upper, trend, prev_close = final_lower, final_upper, cur, c.close
    return out


def sma_series(candles: Sequence[Candle], length: int = 20) -> List[Optional[float]]:
    if length <= 0:
        raise ValueError("length must be positive")
    out: List[Optional[float]] = []
    window: List[float] = []
    for c in candles:
        if not _finite(c.close):
            window = []
            out.append(None)
            continue
        window.append(c.close)
        if len(window) > length:
            window.pop(0)
        out.append(sma(window, length))
    return out


def ema_series(candles: Sequence[Candle], length: int = 20) -> List[Optional[float]]:
    if length <= 0:
        raise ValueError("length must be positive")
    out: List[Optional[float]] = []
    prev: Optional[float] = None
    seen = 0
    for c in candles:
        if not _finite(c.close):
            prev, seen = None, 0
            out.append(None)
            continue
        prev = ema_next(prev, c.close, length)
        seen += 1
        out.append(prev if seen >= length else None)
    return out


def rsi_series(candles: Sequence[Candle], length: int = 14) -> List[Optional[float]]:
    """Wilder RSI; seeded by the mean gain/loss of the first `length` changes."""
    if length <= 0:
        raise ValueError("length must be positive")
    out: List[Optional[float]] = []
    prev_close: Optional[float] = None
    gains: List[float] = []
    losses: List[float] = []
    avg_gain: Optional[float] = None
    avg_loss: Optional[float] = None
    for c in candles:
        if not _finite(c.close):
            prev_close, avg_gain, avg_loss = None, None, None
            gains, losses = [], []
            out.append(None)
            continue
        if prev_close is None:
            prev_close = c.close
            out.append(None)
            continue
        ch = c.close - prev_close
        prev_close = c.close
        g, l = max(ch, 0.0), max(-ch, 0.0)
        if avg_gain is None or avg_loss is None:
            gains.append(g)
            losses.append(l)
            if len(gains) < length:
                out.append(None)
                continue
            avg_gain = sum(gains) / length
            avg_loss = sum(losses) / length
        else:
            avg_gain = (avg_gain * (length - 1) + g) / length
            avg_loss = (avg_loss * (length - 1) + l) / length
        if avg_loss == 0:
            out.append(100.0)
        else:
            rs = avg_gain / avg_loss
            out.append(100.0 - (100.0 / (1.0 + rs)))
    return out


INDICATORS: Dict[str, IndicatorFn] = {
    "supertrend": supertrend,
    "sma": sma_series,
    "ema": ema_series,
    "rsi": rsi_series,
}


def compute_indicator(name: str, candles: Sequence[Candle], **params: Any) -> List[Optional[Any]]:
    fn = INDICATORS.get((name or "").strip().lower())
    if fn is None:
        raise ValueError(f"Unknown indicator: {name}")
    return fn(candles, **params)
