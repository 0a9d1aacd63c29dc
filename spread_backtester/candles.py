from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import RunParams
from .errors import DataSourceError, FatalDataSourceError
from .indicators import supertrend
from .models import AnnotatedCandle, Candle, SupertrendState, finite_or
from .store import CandleSource
from .timeutil import WeekdayFilter, date_key, iso_local, iso_utc

log = logging.getLogger("candles")

SignalIndicator = Callable[..., List[Optional[SupertrendState]]]


@dataclass
class CandleBuild:
    by_date: Dict[str, List[AnnotatedCandle]] = field(default_factory=dict)
    debug: Dict[str, Any] = field(default_factory=dict)


def normalize_candles(candles: Sequence[Candle]) -> List[Candle]:
    """Ascending by ts, last row wins on duplicate timestamps, OHLC non-finite -> NaN."""
    nan = float("nan")
    by_ts: Dict[int, Candle] = {}
    for c in candles:
        by_ts[int(c.ts_ms)] = Candle(
            ts_ms=int(c.ts_ms),
            open=finite_or(c.open, nan),
            high=finite_or(c.high, nan),
            low=finite_or(c.low, nan),
            close=finite_or(c.close, nan),
            volume=finite_or(c.volume, 0.0),
        )
    return [by_ts[ts] for ts in sorted(by_ts)]


async def build_candles_by_date(
    source: CandleSource,
    params: RunParams,
    indicator: SignalIndicator = supertrend,
) -> CandleBuild:
    tz = params.tz
    tf = params.interval
    analysis_from = params.analysis_from_ms
    analysis_to = params.analysis_to_ms
    warmup_from = analysis_from - params.effective_warmup_bars * tf.ms

    debug: Dict[str, Any] = {
        "symbol": params.symbol,
        "timeframe": params.timeframe,
        "timezone": params.timezone,
        "atr_period": params.atr_period,
        "multiplier": params.multiplier,
        "use_wilder": params.use_wilder,
        "warmup_bars": params.effective_warmup_bars,
        "analysis_from_local": iso_local(analysis_from, tz),
        "analysis_to_local": iso_local(analysis_to, tz),
        "warmup_from_local": iso_local(warmup_from, tz),
        "analysis_from_utc": iso_utc(analysis_from),
        "analysis_to_utc": iso_utc(analysis_to),
        "warmup_from_utc": iso_utc(warmup_from),
    }

    try:
        fetched = await source.fetch_candles(params.symbol, params.timeframe, warmup_from, analysis_to)
    except FatalDataSourceError:
        raise
    except DataSourceError as e:
        log.warning("candles_fetch_failed symbol=%s tf=%s err=%s", params.symbol, params.timeframe, e)
        fetched = []

    candles = normalize_candles(fetched)
    debug["query_matched_candles"] = len(candles)
    if not candles:
        log.info("candles_empty symbol=%s tf=%s from=%s to=%s", params.symbol, params.timeframe,
                 debug["warmup_from_utc"], debug["analysis_to_utc"])
        return CandleBuild(debug=debug)

    states = indicator(candles, atr_period=params.atr_period, multiplier=params.multiplier, use_wilder=params.use_wilder)
    raw = [AnnotatedCandle(c, s, iso_local(c.ts_ms, tz) or "") for c, s in zip(candles, states)]

    days = WeekdayFilter(list(params.weekdays), tz)
    by_date: Dict[str, List[AnnotatedCandle]] = {}
    for ac in raw:
        if not (analysis_from <= ac.ts_ms <= analysis_to) or not days.within(ac.ts_ms):
            continue
        by_date.setdefault(date_key(ac.ts_ms, tz), []).append(ac)

    debug["analysis_candles"] = sum(len(v) for v in by_date.values())
    debug["days"] = len(by_date)
    log.info(
        "candles_built symbol=%s tf=%s fetched=%d analysis=%d days=%d",
        params.symbol,
        params.timeframe,
        len(candles),
        debug["analysis_candles"],
        len(by_date),
    )
    return CandleBuild(by_date=by_date, debug=debug)
