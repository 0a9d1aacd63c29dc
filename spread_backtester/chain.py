from __future__ import annotations

import asyncio
from datetime import timedelta, timezone
import logging
from typing import Dict, List, Optional, Tuple

from .errors import DataSourceError, FatalDataSourceError
from .models import Instrument, OptionChain, OptionType, finite_or
from .store import TickSource
from .timeutil import is_canonical_expiry, normalize_expiry, to_local, utc_day_start_ms

log = logging.getLogger("chain")

AUTO_EXPIRY_WINDOW_MS = 5 * 60_000
DAY_MS = 86_400_000

_OPTION_TYPES: Dict[str, OptionType] = {"P": "PUT", "PUT": "PUT", "C": "CALL", "CALL": "CALL"}


def parse_option_type(raw: object) -> Optional[OptionType]:
    return _OPTION_TYPES.get(str(raw or "").strip().upper())


def _utc_date_plus(ts_ms: int, days: int) -> str:
    d = to_local(ts_ms, timezone.utc).date() + timedelta(days=days)
    return d.isoformat()


class ExpiryResolver:
    def __init__(self, source: TickSource, asset: str, currency: str = "USD"):
        self.source = source
        self.asset = asset
        self.currency = currency

    async def _distinct(self, lo: str, hi: str, from_ms: int, to_ms: int) -> List[str]:
        try:
            return await self.source.distinct_expiries(self.asset, self.currency, lo, hi, from_ms, to_ms)
        except FatalDataSourceError:
            raise
        except DataSourceError as e:
            log.warning("expiry_query_failed asset=%s lo=%s hi=%s err=%s", self.asset, lo, hi, e)
            return []

    async def resolve(
        self,
        entry_ms: int,
        mode: str,
        fixed_expiry: Optional[str] = None,
        days_out: int = 0,
        lookahead_days: int = 14,
    ) -> Optional[str]:
        m = (mode or "FIXED").strip().upper()
        if m == "FIXED":
            return normalize_expiry(fixed_expiry)

        base = _utc_date_plus(entry_ms, int(days_out))
        max_date = _utc_date_plus(entry_ms, int(days_out) + int(lookahead_days))

        # Tight window around entry first, then the whole UTC day.
        found = await self._distinct(base, max_date, entry_ms - AUTO_EXPIRY_WINDOW_MS, entry_ms + AUTO_EXPIRY_WINDOW_MS)
        if not found:
            day_from = utc_day_start_ms(entry_ms)
            found = await self._distinct(base, max_date, day_from, day_from + DAY_MS - 1)

        candidates = sorted(e for e in found if is_canonical_expiry(e))
        if not candidates:
            return None
        return candidates[0]


class OptionChainResolver:
    """Per-run chain cache keyed by expiry; concurrent callers share one fetch."""

    def __init__(self, source: TickSource, asset: str, currency: str = "USD"):
        self.source = source
        self.asset = asset
        self.currency = currency
        self._cache: Dict[str, OptionChain] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def resolve(self, expiry: str, from_ms: int, to_ms: int) -> OptionChain:
        hit = self._cache.get(expiry)
        if hit is not None:
            return hit
        lock = self._locks.setdefault(expiry, asyncio.Lock())
        async with lock:
            hit = self._cache.get(expiry)
            if hit is not None:
                return hit
            chain = await self._fetch(expiry, from_ms, to_ms)
            self._cache[expiry] = chain
            return chain

    async def _fetch(self, expiry: str, from_ms: int, to_ms: int) -> OptionChain:
        try:
            rows = await self.source.instruments_in_window(self.asset, self.currency, expiry, from_ms, to_ms)
        except FatalDataSourceError:
            raise
        except DataSourceError as e:
            log.warning("chain_query_failed asset=%s expiry=%s err=%s", self.asset, expiry, e)
            rows = []

        puts: List[Tuple[float, str]] = []
        calls: List[Tuple[float, str]] = []
        dropped = 0
        for r in rows:
            strike = finite_or(r.get("strike"), None)
            inst = str(r.get("instrument") or "").strip()
            ot = parse_option_type(r.get("option_type"))
            if strike is None or not inst or ot is None:
                dropped += 1
                continue
            (puts if ot == "PUT" else calls).append((strike, inst))

        puts.sort()
        calls.sort()
        chain = OptionChain(
            expiry=expiry,
            window_from_ms=from_ms,
            window_to_ms=to_ms,
            puts=tuple(Instrument(i, s, "PUT", expiry) for s, i in puts),
            calls=tuple(Instrument(i, s, "CALL", expiry) for s, i in calls),
        )
        log.debug("chain_built expiry=%s puts=%d calls=%d dropped=%d", expiry, len(chain.puts), len(chain.calls), dropped)
        return chain

    def cached(self) -> Dict[str, OptionChain]:
        return dict(self._cache)
