from __future__ import annotations

from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from .models import Candle, Tick, finite_or
from .timeutil import normalize_expiry, parse_ts_ms

log = logging.getLogger("store")


class CandleSource(Protocol):
    async def fetch_candles(self, symbol: str, timeframe: str, from_ms: int, to_ms: int) -> List[Candle]:
        ...


class TickSource(Protocol):
    async def first_tick_between(
        self,
        instrument: str,
        from_ms: int,
        to_ms: int,
        *,
        price_gte: Optional[float] = None,
        price_lte: Optional[float] = None,
    ) -> Optional[Tick]:
        ...

    async def last_tick_at_or_before(self, instrument: str, at_ms: int, *, not_before_ms: Optional[int] = None) -> Optional[Tick]:
        ...

    async def distinct_expiries(
        self, asset: str, currency: str, expiry_from: str, expiry_to: str, from_ms: int, to_ms: int
    ) -> List[str]:
        ...

    async def instruments_in_window(
        self, asset: str, currency: str, expiry: str, from_ms: int, to_ms: int
    ) -> List[Dict[str, Any]]:
        ...


@dataclass
class _Series:
    """Time-ordered ticks of one instrument plus the raw metadata seen on each."""
    ts: List[int] = field(default_factory=list)
    px: List[float] = field(default_factory=list)
    meta: List[Tuple[Any, Any]] = field(default_factory=list)  # (strike, option_type) as recorded
    sorted: bool = True


class MarketStore:
    """In-memory candle + tick store implementing CandleSource and TickSource."""

    def __init__(self, contract_type: str = "OPT") -> None:
        self.contract_type = contract_type
        self._candles: Dict[Tuple[str, str], Dict[int, Candle]] = {}
        self._ticks: Dict[str, _Series] = {}
        # (asset, currency, expiry) -> instrument ids
        self._by_expiry: Dict[Tuple[str, str, str], Set[str]] = {}

    # ---- loading ----

    def add_candle(self, symbol: str, timeframe: str, c: Candle) -> None:
        self._candles.setdefault((symbol.upper(), timeframe.upper()), {})[int(c.ts_ms)] = c

    def add_tick(
        self,
        instrument: str,
        ts_ms: int,
        price: float,
        *,
        asset: str = "",
        currency: str = "",
        expiry: Optional[str] = None,
        strike: Any = None,
        option_type: Any = None,
        contract_type: Optional[str] = None,
    ) -> None:
        s = self._ticks.get(instrument)
        if s is None:
            s = self._ticks[instrument] = _Series()
        if s.ts and ts_ms < s.ts[-1]:
            s.sorted = False
        s.ts.append(int(ts_ms))
        s.px.append(float(price))
        s.meta.append((strike, option_type))

        if (contract_type or self.contract_type) != self.contract_type:
            return
        exp = normalize_expiry(expiry)
        if exp:
            self._by_expiry.setdefault((asset.upper(), currency.upper(), exp), set()).add(instrument)

    def _series(self, instrument: str) -> Optional[_Series]:
        s = self._ticks.get(instrument)
        if s is None:
            return None
        if not s.sorted:
            order = sorted(range(len(s.ts)), key=lambda i: s.ts[i])
            s.ts = [s.ts[i] for i in order]
            s.px = [s.px[i] for i in order]
            s.meta = [s.meta[i] for i in order]
            s.sorted = True
        return s

    # ---- CandleSource ----

    async def fetch_candles(self, symbol: str, timeframe: str, from_ms: int, to_ms: int) -> List[Candle]:
        rows = self._candles.get((symbol.upper(), timeframe.upper()), {})
        return [rows[ts] for ts in sorted(rows) if from_ms <= ts <= to_ms]

    # ---- TickSource ----

    async def first_tick_between(
        self,
        instrument: str,
        from_ms: int,
        to_ms: int,
        *,
        price_gte: Optional[float] = None,
        price_lte: Optional[float] = None,
    ) -> Optional[Tick]:
        s = self._series(instrument)
        if s is None or to_ms < from_ms:
            return None
        lo = bisect_left(s.ts, from_ms)
        hi = bisect_right(s.ts, to_ms)
        for i in range(lo, hi):
            px = s.px[i]
            if price_gte is not None and not px >= price_gte:
                continue
            if price_lte is not None and not px <= price_lte:
                continue
            return Tick(instrument_id=instrument, ts_ms=s.ts[i], price=px)
        return None

    async def last_tick_at_or_before(self, instrument: str, at_ms: int, *, not_before_ms: Optional[int] = None) -> Optional[Tick]:
        s = self._series(instrument)
        if s is None:
            return None
        i = bisect_right(s.ts, at_ms) - 1
        if i < 0:
            return None
        if not_before_ms is not None and s.ts[i] < not_before_ms:
            return None
        return Tick(instrument_id=instrument, ts_ms=s.ts[i], price=s.px[i])

    def _has_tick_in(self, instrument: str, from_ms: int, to_ms: int) -> bool:
        s = self._series(instrument)
        if s is None:
            return False
        return bisect_left(s.ts, from_ms) < bisect_right(s.ts, to_ms)

    async def distinct_expiries(
        self, asset: str, currency: str, expiry_from: str, expiry_to: str, from_ms: int, to_ms: int
    ) -> List[str]:
        out: Set[str] = set()
        for (a, cur, exp), ids in self._by_expiry.items():
            if a != asset.upper() or cur != currency.upper():
                continue
            if exp < expiry_from or exp > expiry_to:
                continue
            if any(self._has_tick_in(i, from_ms, to_ms) for i in ids):
                out.add(exp)
        return sorted(out)

    async def instruments_in_window(
        self, asset: str, currency: str, expiry: str, from_ms: int, to_ms: int
    ) -> List[Dict[str, Any]]:
        ids = self._by_expiry.get((asset.upper(), currency.upper(), expiry), set())
        rows: List[Dict[str, Any]] = []
        for inst in sorted(ids):
            s = self._series(inst)
            if s is None:
                continue
            i = bisect_left(s.ts, from_ms)
            if i >= len(s.ts) or s.ts[i] > to_ms:
                continue
            strike, option_type = s.meta[i]
            rows.append({"instrument": inst, "strike": strike, "option_type": option_type})
        return rows

    @property
    def instrument_count(self) -> int:
        return len(self._ticks)


def _first(row: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in row and row[k] is not None:
            return row[k]
    return None


def _iter_jsonl(path: str) -> Iterable[Tuple[int, Optional[Dict[str, Any]]]]:
    with open(path, "r", encoding="utf-8") as f:
        for n, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                yield n, None
                continue
            yield n, row if isinstance(row, dict) else None


def load_candles_jsonl(store: MarketStore, path: str, *, symbol: str = "", timeframe: str = "") -> int:
    """Rows: {ts|time|timestamp, open, high, low, close, volume?, symbol?, timeframe?}."""
    loaded = skipped = 0
    for _, row in _iter_jsonl(path):
        if row is None:
            skipped += 1
            continue
        ts = parse_ts_ms(_first(row, "ts", "time", "timestamp"))
        sym = str(_first(row, "symbol") or symbol)
        tf = str(_first(row, "timeframe", "interval") or timeframe)
        if ts is None or not sym or not tf:
            skipped += 1
            continue
        nan = float("nan")
        store.add_candle(sym, tf, Candle(
            ts_ms=ts,
            open=finite_or(row.get("open"), nan),
            high=finite_or(row.get("high"), nan),
            low=finite_or(row.get("low"), nan),
            close=finite_or(row.get("close"), nan),
            volume=finite_or(row.get("volume"), 0.0),
        ))
        loaded += 1
    if skipped:
        log.warning("candles_rows_skipped path=%s skipped=%d loaded=%d", path, skipped, loaded)
    log.info("candles_loaded path=%s rows=%d", path, loaded)
    return loaded


def load_ticks_jsonl(store: MarketStore, path: str) -> int:
    """Rows: {ts, instrument|symbol, price|ltp, strike, option_type, expiry, asset, currency, contract_type?}."""
    loaded = skipped = 0
    for _, row in _iter_jsonl(path):
        if row is None:
            skipped += 1
            continue
        ts = parse_ts_ms(_first(row, "ts", "time", "timestamp"))
        inst = _first(row, "instrument", "symbol")
        price = finite_or(_first(row, "price", "ltp", "mark_price"), None)
        if ts is None or not inst or price is None:
            skipped += 1
            continue
        store.add_tick(
            str(inst),
            ts,
            price,
            asset=str(_first(row, "asset", "underlying") or ""),
            currency=str(_first(row, "currency", "settle_currency") or ""),
            expiry=_first(row, "expiry", "expiry_date"),
            strike=_first(row, "strike", "strike_price"),
            option_type=_first(row, "option_type", "type"),
            contract_type=_first(row, "contract_type"),
        )
        loaded += 1
    if skipped:
        log.warning("ticks_rows_skipped path=%s skipped=%d loaded=%d", path, skipped, loaded)
    log.info("ticks_loaded path=%s rows=%d instruments=%d", path, loaded, store.instrument_count)
    return loaded


def load_jsonl_store(candles_path: Optional[str] = None, ticks_path: Optional[str] = None, *, contract_type: str = "OPT") -> MarketStore:
    store = MarketStore(contract_type=contract_type)
    if candles_path:
        load_candles_jsonl(store, candles_path)
    if ticks_path:
        load_ticks_jsonl(store, ticks_path)
    return store
