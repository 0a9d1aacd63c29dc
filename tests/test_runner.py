import asyncio
import json

from spread_backtester.config import validate_run
from spread_backtester.errors import DataSourceError, FatalDataSourceError
from spread_backtester.formatters import format_report, to_json
from spread_backtester.runner import BacktestRunner
from spread_backtester.signature import stable_run_signature
from spread_backtester.store import MarketStore


class _Candles:
    def __init__(self, delay_s: float = 0.0):
        self.delay_s = delay_s

    async def fetch_candles(self, symbol, timeframe, from_ms, to_ms):
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if symbol == "DOWN":
            raise FatalDataSourceError("exchange unreachable")
        if symbol == "FLAKY":
            raise DataSourceError("one bad page")
        return []


def _p(**kw):
    raw = {"from_date": "2026-01-05", "to_date": "2026-01-05", "expiry": "2026-01-06"}
    raw.update(kw)
    return validate_run(raw)


def test_fatal_run_does_not_sink_siblings():
    params = [_p(), _p(symbol="DOWN"), _p(symbol="FLAKY")]
    result = asyncio.run(BacktestRunner(_Candles(), MarketStore()).run_all(params))

    assert [r.index for r in result.runs] == [0, 1, 2]
    assert result.runs[0].error is None
    assert result.runs[1].error.startswith("data source failure")
    assert result.runs[2].error is None
    assert [t.reason for t in result.runs[2].trades] == ["NO_CANDLES"]
    assert result.overall.total_trades == 0
    assert result.strategy == "bull_put_spread"


def test_run_timeout_yields_zero_summary():
    runner = BacktestRunner(_Candles(delay_s=5.0), MarketStore(), run_timeout_s=0.05)
    result = asyncio.run(runner.run_all([_p()]))
    run = result.runs[0]
    assert run.error is not None and run.error.startswith("timeout")
    assert run.trades == ()
    assert run.summary.total_trades == 0


def test_json_output_is_deterministic():
    params = [_p(), _p(strategy="bear_call_spread")]

    def _once():
        return to_json(asyncio.run(BacktestRunner(_Candles(), MarketStore(), run_concurrency=2).run_all(params)))

    a, b = _once(), _once()
    assert a == b
    payload = json.loads(a)
    assert payload["runs"][0]["signature"] == stable_run_signature(params[0])
    assert payload["runs"][1]["params"]["strategy"] == "bear_call_spread"
    assert payload["runs"][0]["trades"][0]["reason"] == "NO_CANDLES"


def test_signature_tracks_params():
    assert stable_run_signature(_p()) == stable_run_signature(_p())
    assert stable_run_signature(_p()) != stable_run_signature(_p(multiplier=2.5))


def test_report_lists_runs_and_overall():
    result = asyncio.run(BacktestRunner(_Candles(), MarketStore()).run_all([_p(), _p(symbol="DOWN")]))
    text = format_report(result)
    assert "Run #0" in text
    assert "ERROR: data source failure" in text
    assert text.splitlines()[-1].startswith("OVERALL | trades=0")
