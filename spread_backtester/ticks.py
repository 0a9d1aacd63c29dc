from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
from typing import List, Literal, Optional

from .errors import DataSourceError, FatalDataSourceError
from .models import Tick
from .store import TickSource

log = logging.getLogger("ticks")

RiskKind = Literal["STOPLOSS", "TARGET"]


@dataclass(frozen=True)
class RiskHit:
    kind: RiskKind
    tick: Tick


def _usable(t: Optional[Tick]) -> Optional[Tick]:
    if t is None or t.price is None or not math.isfinite(t.price):
        return None
    return t


async def gather_ticks(*aws) -> List[Optional[Tick]]:
    """gather() that lets every lookup finish, then re-raises the first failure."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for r in results:
        if isinstance(r, BaseException):
            raise r
    return list(results)


def _threshold(x: Optional[float]) -> Optional[float]:
    if x is None or not math.isfinite(x):
        return None
    return x


class TickResolver:
    """Point and range lookups over one instrument's ticks, never fabricating prices."""

    def __init__(self, source: TickSource):
        self.source = source

    async def _guard(self, coro, what: str, instrument: str) -> Optional[Tick]:
        try:
            return _usable(await coro)
        except FatalDataSourceError:
            raise
        except DataSourceError as e:
            log.warning("tick_query_failed what=%s instrument=%s err=%s", what, instrument, e)
            return None

    async def first_tick_at_or_after(self, instrument: str, from_ms: int, to_ms: int) -> Optional[Tick]:
        if to_ms < from_ms:
            return None
        return await self._guard(
            self.source.first_tick_between(instrument, from_ms, to_ms), "first", instrument
        )

    async def last_tick_at_or_before(self, instrument: str, at_ms: int, not_before_ms: Optional[int] = None) -> Optional[Tick]:
        return await self._guard(
            self.source.last_tick_at_or_before(instrument, at_ms, not_before_ms=not_before_ms), "last", instrument
        )

    async def first_risk_hit(
        self,
        instrument: str,
        from_ms: int,
        to_ms: int,
        stop_loss_price: Optional[float],
        target_price: Optional[float],
        *,
        short: bool = True,
        tie_break: RiskKind = "STOPLOSS",
    ) -> Optional[RiskHit]:
        """Race the stop scan against the target scan; earliest tick wins."""
        sl = _threshold(stop_loss_price)
        tp = _threshold(target_price)
        if to_ms < from_ms or (sl is None and tp is None):
            return None

        async def _none() -> Optional[Tick]:
            return None

        def _scan(threshold: Optional[float], adverse: bool):
            if threshold is None:
                return _none()
            # Short legs lose when price rises, long legs when it falls.
            rising = adverse == short
            kw = {"price_gte": threshold} if rising else {"price_lte": threshold}
            return self._guard(
                self.source.first_tick_between(instrument, from_ms, to_ms, **kw),
                "stoploss" if adverse else "target",
                instrument,
            )

        sl_tick, tp_tick = await gather_ticks(_scan(sl, True), _scan(tp, False))

        if sl_tick is not None and tp_tick is not None:
            if sl_tick.ts_ms < tp_tick.ts_ms:
                return RiskHit("STOPLOSS", sl_tick)
            if tp_tick.ts_ms < sl_tick.ts_ms:
                return RiskHit("TARGET", tp_tick)
            return RiskHit(tie_break, sl_tick if tie_break == "STOPLOSS" else tp_tick)
        if sl_tick is not None:
            return RiskHit("STOPLOSS", sl_tick)
        if tp_tick is not None:
            return RiskHit("TARGET", tp_tick)
        return None
