from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .chain import ExpiryResolver, OptionChainResolver
from .config import RunParams
from .legs import pick_atm, pick_by_moneyness
from .models import AnnotatedCandle, Instrument, LegFill, LegSpec, OptionChain, Tick, Trade, finite_or
from .ticks import RiskHit, TickResolver, gather_ticks
from .timeutil import WEEKDAYS, hhmm, iso_local, parse_date

log = logging.getLogger("scheduler")


@dataclass(frozen=True)
class SignalTags:
    entry: str
    entry_fallback: str
    exit: str
    exit_time: str


SIGNAL_TAGS: Dict[str, SignalTags] = {
    "BULLISH": SignalTags(
        entry="SUPERTREND_BUY_SIGNAL",
        entry_fallback="SUPERTREND_UPTREND_NO_BUY_SIGNAL",
        exit="SUPERTREND_SELL_SIGNAL",
        exit_time="TIME_EXIT_NO_SELL_SIGNAL",
    ),
    "BEARISH": SignalTags(
        entry="SUPERTREND_SELL_SIGNAL",
        entry_fallback="SUPERTREND_DOWNTREND_NO_SELL_SIGNAL",
        exit="SUPERTREND_BUY_SIGNAL",
        exit_time="TIME_EXIT_NO_BUY_SIGNAL",
    ),
}

EXIT_VIA_RISK = "MAIN_SLTP"
EXIT_VIA_PLAN = "SUPERTREND_OR_TIME"


def risk_levels(entry_price: float, stop_loss_pct: float, target_pct: float, *, short: bool = True) -> Tuple[Optional[float], Optional[float]]:
    """Absolute stop/target for one leg; a pct <= 0 leaves that level unset."""
    sl_pct = finite_or(stop_loss_pct, 0.0)
    tp_pct = finite_or(target_pct, 0.0)
    sign = 1.0 if short else -1.0
    sl = entry_price * (1 + sign * sl_pct / 100) if sl_pct > 0 else None
    tp = entry_price * (1 - sign * tp_pct / 100) if tp_pct > 0 else None
    return sl, tp


def leg_points(side: str, entry_price: float, exit_price: float) -> float:
    return entry_price - exit_price if side == "SHORT" else exit_price - entry_price


@dataclass
class _Attempt:
    entry_idx: int
    exit_idx: int
    entry_reason: str
    exit_reason: str
    next_cursor: int


class TradeScheduler:
    """Day-by-day signal scan that turns entry/exit pairs into spread trades.

    Per day the cursor starts at 0. Each attempt finds the next entry signal,
    plans an exit, resolves expiry, chain and legs, prices the legs from ticks
    and lets a MAIN stop/target hit pre-empt the planned exit. Every attempt
    ends in exactly one row, taken or not.
    """

    def __init__(
        self,
        params: RunParams,
        candle_days: Dict[str, List[AnnotatedCandle]],
        ticks: TickResolver,
        expiries: ExpiryResolver,
        chains: OptionChainResolver,
    ):
        self.params = params
        self.candle_days = candle_days
        self.ticks = ticks
        self.expiries = expiries
        self.chains = chains

        self.tz = params.tz
        self.legs: List[LegSpec] = params.leg_specs()
        self.tags = SIGNAL_TAGS[params.direction]
        self.trend_tag = "UP" if params.direction == "BULLISH" else "DOWN"
        self.chain_label = f"NO_{params.option_type}_CHAIN"

        self.window_from_ms = params.analysis_from_ms
        self.window_to_ms = params.analysis_to_ms
        self.hedge_tol_ms = int(params.hedge_exit_tolerance_s) * 1000

        self._fixed_chain: Optional[OptionChain] = None
        self._attempts = 0

    # ---- signal contract ----

    def _is_entry(self, c: AnnotatedCandle) -> bool:
        return c.buy_signal if self.params.direction == "BULLISH" else c.sell_signal

    def _is_exit(self, c: AnnotatedCandle) -> bool:
        return c.sell_signal if self.params.direction == "BULLISH" else c.buy_signal

    def _days(self) -> List[str]:
        d = parse_date(self.params.from_date)
        end = parse_date(self.params.to_date)
        out: List[str] = []
        while d <= end:
            out.append(d.isoformat())
            d += timedelta(days=1)
        return out

    def _weekday_allowed(self, date: str) -> bool:
        days = self.params.weekdays
        return not days or WEEKDAYS[parse_date(date).weekday()] in days

    def _skip(self, date: str, reason: str, **meta: Any) -> Trade:
        self._attempts += 1
        log.debug("attempt_skipped date=%s reason=%s meta=%s", date, reason, meta)
        return Trade(date=date, took=False, reason=reason, meta=meta)

    # ---- run ----

    async def run(self) -> Tuple[List[Trade], Dict[str, Any]]:
        p = self.params
        if p.expiry_mode == "FIXED" and p.expiry:
            self._fixed_chain = await self.chains.resolve(p.expiry, self.window_from_ms, self.window_to_ms)
            if not self._fixed_chain.ladder(p.option_type):
                log.info("chain_empty expiry=%s type=%s", p.expiry, p.option_type)

        rows: List[Trade] = []
        for date in self._days():
            if not self._weekday_allowed(date):
                rows.append(self._skip(date, "WEEKDAY_FILTERED", weekdays=list(self.params.weekdays)))
                continue
            rows.extend(await self._run_day(date, self.candle_days.get(date, [])))

        taken = sum(1 for t in rows if t.took)
        debug = {
            "days": len(self._days()),
            "attempts": self._attempts,
            "trades": taken,
            "chains": {
                exp: {"puts": len(ch.puts), "calls": len(ch.calls)}
                for exp, ch in sorted(self.chains.cached().items())
            },
        }
        return rows, debug

    async def _run_day(self, date: str, day: Sequence[AnnotatedCandle]) -> List[Trade]:
        p = self.params
        out: List[Trade] = []

        entries = sum(1 for c in day if self._is_entry(c))
        exits = sum(1 for c in day if self._is_exit(c))

        if not day:
            out.append(self._skip(date, "NO_CANDLES", symbol=p.symbol, timeframe=p.timeframe))
            return out
        if p.expiry_mode == "FIXED" and (self._fixed_chain is None or not self._fixed_chain.ladder(p.option_type)):
            out.append(self._skip(date, self.chain_label, expiry=p.expiry, symbol=p.symbol, timeframe=p.timeframe))
            return out

        trades_today = 0
        cursor = 0
        while cursor < len(day):
            if p.max_trades_per_day is not None and trades_today >= p.max_trades_per_day:
                break

            entry_idx, entry_reason = self._find_entry(day, cursor, trades_today)
            if entry_idx < 0:
                if trades_today == 0:
                    out.append(self._skip(date, "NO_ENTRY_SIGNAL", entry_mode=p.entry_mode, symbol=p.symbol, timeframe=p.timeframe))
                break

            exit_idx, exit_reason = self._find_exit(day, entry_idx)
            if exit_idx < 0:
                out.append(self._skip(date, "NO_EXIT_CANDLE", entry_time=day[entry_idx].local_time))
                break

            if day[exit_idx].ts_ms <= day[entry_idx].ts_ms:
                cursor = exit_idx + 1
                continue

            row, next_cursor = await self._attempt(date, day, _Attempt(
                entry_idx=entry_idx,
                exit_idx=exit_idx,
                entry_reason=entry_reason,
                exit_reason=exit_reason,
                next_cursor=exit_idx + 1,
            ), trades_today)
            out.append(row)
            if row.took:
                trades_today += 1
            cursor = next_cursor

        log.info(
            "day_scan date=%s candles=%d entry_signals=%d exit_signals=%d rows=%d trades=%d",
            date,
            len(day),
            entries,
            exits,
            len(out),
            trades_today,
        )
        return out

    def _find_entry(self, day: Sequence[AnnotatedCandle], cursor: int, trades_today: int) -> Tuple[int, str]:
        for i in range(cursor, len(day)):
            if self._is_entry(day[i]):
                return i, self.tags.entry
        # Pre-existing trend with no flip yet; first trade of the day only.
        if self.params.entry_mode == "signal_or_trend" and trades_today == 0:
            for i in range(cursor, len(day)):
                if day[i].trend == self.trend_tag:
                    return i, self.tags.entry_fallback
        return -1, ""

    def _find_exit(self, day: Sequence[AnnotatedCandle], entry_idx: int) -> Tuple[int, str]:
        for i in range(entry_idx + 1, len(day)):
            if self._is_exit(day[i]):
                return i, self.tags.exit
        target = self.params.time_exit_hhmm
        if target:
            for i in range(len(day) - 1, entry_idx, -1):
                if hhmm(day[i].ts_ms, self.tz) == target[:5]:
                    return i, self.tags.exit_time
        if len(day) - 1 > entry_idx:
            return len(day) - 1, self.tags.exit_time
        return -1, ""

    async def _attempt(
        self,
        date: str,
        day: Sequence[AnnotatedCandle],
        a: _Attempt,
        trades_today: int,
    ) -> Tuple[Trade, int]:
        p = self.params
        entry_c = day[a.entry_idx]
        exit_c = day[a.exit_idx]
        entry_ms = entry_c.ts_ms
        planned_exit_ms = exit_c.ts_ms
        skip_cursor = a.exit_idx + 1

        underlying = finite_or(entry_c.close, None)
        if underlying is None:
            return self._skip(date, "NO_UNDERLYING_CLOSE", entry_time=entry_c.local_time, exit_time=exit_c.local_time), skip_cursor

        if p.expiry_mode == "FIXED":
            expiry = p.expiry
            chain = self._fixed_chain
        else:
            expiry = await self.expiries.resolve(
                entry_ms,
                p.expiry_mode,
                days_out=p.expiry_days_out,
                lookahead_days=p.expiry_lookahead_days,
            )
            if not expiry:
                return self._skip(
                    date,
                    "NO_AUTO_EXPIRY_FOUND",
                    expiry_mode=p.expiry_mode,
                    expiry_days_out=p.expiry_days_out,
                    expiry_lookahead_days=p.expiry_lookahead_days,
                ), skip_cursor
            chain = await self.chains.resolve(expiry, self.window_from_ms, self.window_to_ms)

        ladder = chain.ladder(p.option_type) if chain is not None else ()
        if not ladder:
            return self._skip(date, self.chain_label, expiry=expiry, expiry_mode=p.expiry_mode), skip_cursor

        atm_idx = pick_atm(ladder, underlying, p.atm_prefer)
        if atm_idx < 0:
            return self._skip(date, "NO_ATM_STRIKE", underlying_price=underlying), skip_cursor

        picks: List[Instrument] = []
        for spec in self.legs:
            pick = pick_by_moneyness(ladder, atm_idx, spec.moneyness, spec.option_type)
            if pick.instrument is None:
                return self._skip(
                    date,
                    f"{spec.role}_{pick.reason}",
                    underlying_price=underlying,
                    moneyness=spec.moneyness.label,
                    atm_strike=ladder[atm_idx].strike,
                ), skip_cursor
            picks.append(pick.instrument)

        entry_ticks = await gather_ticks(*[
            self.ticks.first_tick_at_or_after(inst.id, entry_ms, planned_exit_ms) for inst in picks
        ])
        for spec, inst, tick in zip(self.legs, picks, entry_ticks):
            if tick is None:
                return self._skip(date, f"NO_{spec.role}_ENTRY_TICK", instrument=inst.id, expiry=expiry), skip_cursor

        main_spec, main_inst, main_entry = self.legs[0], picks[0], entry_ticks[0]
        short = main_spec.side == "SHORT"
        stop_loss, target = risk_levels(main_entry.price, p.stop_loss_pct, p.target_pct, short=short)

        # Strictly after the entry tick, so a risk exit never shares its timestamp.
        hit: Optional[RiskHit] = await self.ticks.first_risk_hit(
            main_inst.id,
            main_entry.ts_ms + 1,
            planned_exit_ms,
            stop_loss,
            target,
            short=short,
            tie_break=p.risk_tie_break,  # type: ignore[arg-type]
        )

        exit_ms = planned_exit_ms
        exit_reason = a.exit_reason
        exit_via = EXIT_VIA_PLAN
        next_cursor = a.next_cursor
        if hit is not None:
            exit_ms = hit.tick.ts_ms
            exit_reason = f"{hit.kind}_HIT_MAIN"
            exit_via = EXIT_VIA_RISK
            next_cursor = next((i for i in range(a.entry_idx + 1, len(day)) if day[i].ts_ms > exit_ms), len(day))

        exit_ticks: List[Tick] = []
        for i, (spec, inst) in enumerate(zip(self.legs, picks)):
            if i == 0:
                tick = hit.tick if hit is not None else await self._main_exit_tick(inst.id, entry_ms, exit_ms, planned_exit_ms)
            else:
                tick = await self._hedge_exit_tick(inst.id, entry_ms, exit_ms, planned_exit_ms)
            if tick is None:
                return self._skip(date, f"NO_{spec.role}_EXIT_TICK", instrument=inst.id, expiry=expiry), next_cursor
            exit_ticks.append(tick)

        fills: List[LegFill] = []
        for spec, inst, t_in, t_out in zip(self.legs, picks, entry_ticks, exit_ticks):
            fills.append(LegFill(
                role=spec.role,
                side=spec.side,
                instrument=inst,
                moneyness=spec.moneyness.label,
                entry_price=t_in.price,
                exit_price=t_out.price,
                entry_tick_ms=t_in.ts_ms,
                exit_tick_ms=t_out.ts_ms,
                points=leg_points(spec.side, t_in.price, t_out.price),
            ))

        net_points = sum(f.points for f in fills)
        net_pnl = net_points * p.qty
        if not math.isfinite(net_pnl):
            return self._skip(date, "NON_FINITE_PNL", expiry=expiry), next_cursor

        self._attempts += 1
        trade = Trade(
            date=date,
            took=True,
            trade_index_in_day=trades_today + 1,
            entry_time_ms=entry_ms,
            exit_time_ms=exit_ms,
            planned_exit_time_ms=planned_exit_ms,
            entry_reason=a.entry_reason,
            exit_reason=exit_reason,
            exit_via=exit_via,
            expiry=expiry,
            underlying_price=underlying,
            legs=tuple(fills),
            qty=p.qty,
            net_points=net_points,
            net_pnl=net_pnl,
            stop_loss_price=stop_loss,
            target_price=target,
            meta={
                "strategy": p.strategy,
                "symbol": p.symbol,
                "timeframe": p.timeframe,
                "timezone": p.timezone,
                "entry_time": iso_local(entry_ms, self.tz),
                "exit_time": iso_local(exit_ms, self.tz),
                "planned_exit_time": iso_local(planned_exit_ms, self.tz),
                "atm_strike": ladder[atm_idx].strike,
            },
        )
        log.info(
            "trade date=%s n=%d expiry=%s main=%s net_points=%.4f qty=%s net_pnl=%.2f exit_reason=%s",
            date,
            trade.trade_index_in_day,
            expiry,
            main_inst.id,
            net_points,
            p.qty,
            net_pnl,
            exit_reason,
        )
        return trade, next_cursor

    async def _main_exit_tick(self, inst: str, entry_ms: int, exit_ms: int, planned_exit_ms: int) -> Optional[Tick]:
        tick = await self.ticks.last_tick_at_or_before(inst, exit_ms, not_before_ms=entry_ms)
        if tick is None:
            tick = await self.ticks.first_tick_at_or_after(inst, exit_ms, planned_exit_ms)
        return tick

    async def _hedge_exit_tick(self, inst: str, entry_ms: int, exit_ms: int, planned_exit_ms: int) -> Optional[Tick]:
        """Hedge ticks are sparser: same instant, short forward tolerance, then wider fallbacks."""
        tick = await self.ticks.last_tick_at_or_before(inst, exit_ms, not_before_ms=entry_ms)
        if tick is None:
            tick = await self.ticks.first_tick_at_or_after(inst, exit_ms, exit_ms + self.hedge_tol_ms)
        if tick is None:
            tick = await self.ticks.last_tick_at_or_before(inst, planned_exit_ms, not_before_ms=entry_ms)
        if tick is None:
            tick = await self.ticks.first_tick_at_or_after(inst, entry_ms, planned_exit_ms)
        return tick
