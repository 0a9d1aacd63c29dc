import asyncio

import pytest

from spread_backtester.errors import DataSourceError, FatalDataSourceError
from spread_backtester.store import MarketStore
from spread_backtester.ticks import TickResolver

INST = "P-99000-060126"
S = 1_000


def _store(ticks):
    store = MarketStore()
    for ts, px in ticks:
        store.add_tick(INST, ts, px, asset="BTC", currency="USD", expiry="2026-01-06", strike=99000, option_type="P")
    return store


class _FailingSource:
    def __init__(self, exc):
        self.exc = exc

    async def first_tick_between(self, instrument, from_ms, to_ms, *, price_gte=None, price_lte=None):
        raise self.exc

    async def last_tick_at_or_before(self, instrument, at_ms, *, not_before_ms=None):
        raise self.exc


def test_stoploss_hit_before_target():
    store = _store([(10 * S, 100.0), (20 * S, 120.0), (30 * S, 131.0), (40 * S, 60.0)])
    r = TickResolver(store)

    hit = asyncio.run(r.first_risk_hit(INST, 10 * S + 1, 100 * S, 130.0, 70.0))
    assert hit is not None
    assert hit.kind == "STOPLOSS"
    assert hit.tick.ts_ms == 30 * S
    assert hit.tick.price == 131.0


def test_target_when_earlier():
    store = _store([(10 * S, 100.0), (20 * S, 69.0), (30 * S, 131.0)])
    hit = asyncio.run(TickResolver(store).first_risk_hit(INST, 11 * S, 100 * S, 130.0, 70.0))
    assert hit.kind == "TARGET"
    assert hit.tick.ts_ms == 20 * S


def test_same_timestamp_tie_break():
    store = _store([(10 * S, 100.0), (20 * S, 131.0), (20 * S, 65.0)])
    r = TickResolver(store)

    hit = asyncio.run(r.first_risk_hit(INST, 11 * S, 100 * S, 130.0, 70.0))
    assert hit.kind == "STOPLOSS" and hit.tick.price == 131.0

    hit = asyncio.run(r.first_risk_hit(INST, 11 * S, 100 * S, 130.0, 70.0, tie_break="TARGET"))
    assert hit.kind == "TARGET" and hit.tick.price == 65.0


def test_unset_thresholds_never_fire():
    store = _store([(10 * S, 100.0), (20 * S, 500.0), (30 * S, 1.0)])
    r = TickResolver(store)
    assert asyncio.run(r.first_risk_hit(INST, 0, 100 * S, None, None)) is None
    hit = asyncio.run(r.first_risk_hit(INST, 0, 100 * S, None, 70.0))
    assert hit.kind == "TARGET" and hit.tick.ts_ms == 30 * S
    assert asyncio.run(r.first_risk_hit(INST, 0, 15 * S, 130.0, 70.0)) is None


def test_long_leg_inverts_bounds():
    store = _store([(10 * S, 100.0), (20 * S, 79.0), (30 * S, 121.0)])
    hit = asyncio.run(TickResolver(store).first_risk_hit(INST, 11 * S, 100 * S, 80.0, 120.0, short=False))
    assert hit.kind == "STOPLOSS"
    assert hit.tick.price == 79.0


def test_point_lookups_are_bounded():
    store = _store([(10 * S, 100.0), (20 * S, 101.0), (30 * S, 102.0)])
    r = TickResolver(store)

    assert asyncio.run(r.first_tick_at_or_after(INST, 15 * S, 40 * S)).price == 101.0
    assert asyncio.run(r.first_tick_at_or_after(INST, 31 * S, 40 * S)) is None
    assert asyncio.run(r.last_tick_at_or_before(INST, 25 * S)).price == 101.0
    assert asyncio.run(r.last_tick_at_or_before(INST, 25 * S, not_before_ms=21 * S)) is None
    assert asyncio.run(r.last_tick_at_or_before(INST, 5 * S)) is None
    assert asyncio.run(r.first_tick_at_or_after("missing", 0, 40 * S)) is None


def test_non_finite_price_counts_as_absent():
    store = _store([(10 * S, float("nan"))])
    assert asyncio.run(TickResolver(store).first_tick_at_or_after(INST, 0, 20 * S)) is None


def test_transient_failure_is_not_found_and_fatal_propagates():
    r = TickResolver(_FailingSource(DataSourceError("flaky")))
    assert asyncio.run(r.first_tick_at_or_after(INST, 0, 10)) is None
    assert asyncio.run(r.first_risk_hit(INST, 0, 10, 130.0, 70.0)) is None

    r = TickResolver(_FailingSource(FatalDataSourceError("down")))
    with pytest.raises(FatalDataSourceError):
        asyncio.run(r.last_tick_at_or_before(INST, 10))


class _CountingFatalSource:
    def __init__(self):
        self.calls = 0

    async def first_tick_between(self, instrument, from_ms, to_ms, *, price_gte=None, price_lte=None):
        self.calls += 1
        await asyncio.sleep(0)
        raise FatalDataSourceError(f"down gte={price_gte} lte={price_lte}")

    async def last_tick_at_or_before(self, instrument, at_ms, *, not_before_ms=None):
        raise FatalDataSourceError("down")


def test_fatal_in_risk_race_waits_for_both_scans():
    src = _CountingFatalSource()
    with pytest.raises(FatalDataSourceError) as ei:
        asyncio.run(TickResolver(src).first_risk_hit(INST, 0, 10, 130.0, 70.0))
    assert src.calls == 2
    assert "gte=130.0" in str(ei.value)
