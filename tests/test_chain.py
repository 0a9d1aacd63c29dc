import asyncio
from datetime import datetime, timezone

from spread_backtester.chain import ExpiryResolver, OptionChainResolver, parse_option_type
from spread_backtester.store import MarketStore
from spread_backtester.timeutil import normalize_expiry

MIN = 60_000


def _ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def _tick(store, inst, ts, expiry, strike, ot, price=10.0, asset="BTC"):
    store.add_tick(inst, ts, price, asset=asset, currency="USD", expiry=expiry, strike=strike, option_type=ot)


def test_normalize_expiry():
    assert normalize_expiry("2026-01-08") == "2026-01-08"
    assert normalize_expiry("08JAN2026") == "2026-01-08"
    assert normalize_expiry("8jan2026") == "2026-01-08"
    assert normalize_expiry("2026-1-8") is None
    assert normalize_expiry("2026-02-30") is None
    assert normalize_expiry("31FOO2026") is None
    assert normalize_expiry("") is None
    assert normalize_expiry(None) is None


def test_parse_option_type():
    assert parse_option_type("p") == "PUT"
    assert parse_option_type("CALL") == "CALL"
    assert parse_option_type("X") is None


def test_chain_sorted_and_unparsable_dropped():
    t = _ms(2026, 1, 5, 10)
    store = MarketStore()
    _tick(store, "P-101", t, "2026-01-06", "101", "P")
    _tick(store, "P-99", t, "2026-01-06", 99, "PUT")
    _tick(store, "P-100", t, "2026-01-06", 100.0, "P")
    _tick(store, "C-102", t, "2026-01-06", 102, "C")
    _tick(store, "BAD-STRIKE", t, "2026-01-06", "abc", "P")
    _tick(store, "BAD-TYPE", t, "2026-01-06", 100, "X")
    _tick(store, "OTHER-EXP", t, "2026-01-07", 100, "P")
    _tick(store, "ETH-P", t, "2026-01-06", 100, "P", asset="ETH")

    chain = asyncio.run(OptionChainResolver(store, "BTC").resolve("2026-01-06", t - MIN, t + MIN))
    assert [i.strike for i in chain.puts] == [99.0, 100.0, 101.0]
    assert [i.id for i in chain.calls] == ["C-102"]
    assert chain.ladder("PUT") == chain.puts
    assert all(i.expiry == "2026-01-06" for i in chain.puts)


def test_chain_uses_first_tick_in_window():
    t = _ms(2026, 1, 5, 10)
    store = MarketStore()
    _tick(store, "P-X", t - 10 * MIN, "2026-01-06", "junk", "P")
    _tick(store, "P-X", t, "2026-01-06", 100, "P")
    chain = asyncio.run(OptionChainResolver(store, "BTC").resolve("2026-01-06", t - MIN, t + MIN))
    assert [i.id for i in chain.puts] == ["P-X"]


class _CountingSource:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    async def instruments_in_window(self, *args):
        self.calls += 1
        await asyncio.sleep(0)
        return await self.inner.instruments_in_window(*args)


def test_chain_cache_shared_by_concurrent_callers():
    t = _ms(2026, 1, 5, 10)
    store = MarketStore()
    _tick(store, "P-100", t, "2026-01-06", 100, "P")
    src = _CountingSource(store)
    resolver = OptionChainResolver(src, "BTC")

    async def _go():
        return await asyncio.gather(*[resolver.resolve("2026-01-06", t - MIN, t + MIN) for _ in range(5)])

    chains = asyncio.run(_go())
    assert src.calls == 1
    assert all(c is chains[0] for c in chains)


def test_auto_expiry_prefers_ticks_near_entry():
    entry = _ms(2026, 1, 5, 10)
    store = MarketStore()
    _tick(store, "P-A", _ms(2026, 1, 5, 12), "2026-01-05", 100, "P")
    _tick(store, "P-B", entry + 2 * MIN, "2026-01-06", 100, "P")
    _tick(store, "P-C", entry, "2026-01-30", 100, "P")
    r = ExpiryResolver(store, "BTC")

    # +/-5 minutes around entry: only 2026-01-06 (2026-01-30 is past the lookahead).
    assert asyncio.run(r.resolve(entry, "AUTO", days_out=0, lookahead_days=14)) == "2026-01-06"

    # Nothing near 15:00, widen to the UTC day: smallest wins.
    assert asyncio.run(r.resolve(_ms(2026, 1, 5, 15), "AUTO")) == "2026-01-05"

    # days_out moves the lower bound.
    assert asyncio.run(r.resolve(_ms(2026, 1, 5, 15), "AUTO", days_out=1)) == "2026-01-06"

    assert asyncio.run(r.resolve(_ms(2026, 2, 5, 15), "AUTO")) is None


def test_fixed_expiry_is_normalized():
    r = ExpiryResolver(MarketStore(), "BTC")
    assert asyncio.run(r.resolve(0, "FIXED", "06JAN2026")) == "2026-01-06"
    assert asyncio.run(r.resolve(0, "FIXED", "garbage")) is None
