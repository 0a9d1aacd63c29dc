from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from .aggregate import fold_summaries, summarize
from .candles import build_candles_by_date
from .chain import ExpiryResolver, OptionChainResolver
from .config import RunParams
from .errors import FatalDataSourceError
from .models import OverallResult, RunResult, RunSummary
from .scheduler import TradeScheduler
from .signature import log_run_signature, stable_run_signature
from .store import CandleSource, TickSource
from .ticks import TickResolver

log = logging.getLogger("runner")


class BacktestRunner:
    """Runs independent backtests concurrently; each run owns its chain cache."""

    def __init__(
        self,
        candle_source: CandleSource,
        tick_source: TickSource,
        *,
        run_concurrency: int = 4,
        run_timeout_s: Optional[float] = None,
    ):
        self.candle_source = candle_source
        self.tick_source = tick_source
        self.run_concurrency = max(1, int(run_concurrency))
        self.run_timeout_s = run_timeout_s

    async def _execute(self, index: int, params: RunParams) -> RunResult:
        build = await build_candles_by_date(self.candle_source, params)
        scheduler = TradeScheduler(
            params,
            build.by_date,
            TickResolver(self.tick_source),
            ExpiryResolver(self.tick_source, params.asset, params.currency),
            OptionChainResolver(self.tick_source, params.asset, params.currency),
        )
        trades, sched_debug = await scheduler.run()
        return RunResult(
            index=index,
            signature=stable_run_signature(params),
            params=params.as_dict(),
            summary=summarize(trades),
            trades=tuple(trades),
            debug={"candles": build.debug, "scheduler": sched_debug},
        )

    def _failed(self, index: int, params: RunParams, err: str) -> RunResult:
        return RunResult(
            index=index,
            signature=stable_run_signature(params),
            params=params.as_dict(),
            summary=RunSummary(),
            error=err,
        )

    async def run_one(self, index: int, params: RunParams) -> RunResult:
        log_run_signature(index, params)
        try:
            if self.run_timeout_s:
                res = await asyncio.wait_for(self._execute(index, params), timeout=self.run_timeout_s)
            else:
                res = await self._execute(index, params)
        except asyncio.TimeoutError:
            log.warning("run_timeout index=%d timeout_s=%s", index, self.run_timeout_s)
            return self._failed(index, params, f"timeout after {self.run_timeout_s}s")
        except FatalDataSourceError as e:
            log.warning("run_aborted index=%d err=%s", index, e)
            return self._failed(index, params, f"data source failure: {e}")

        s = res.summary
        log.info(
            "run_done index=%d trades=%d wins=%d losses=%d pnl=%.2f win_rate=%.2f",
            index,
            s.total_trades,
            s.wins,
            s.losses,
            s.cumulative_pnl,
            s.win_rate_pct,
        )
        return res

    async def run_all(self, params_list: Sequence[RunParams], strategy: str = "") -> OverallResult:
        sem = asyncio.Semaphore(self.run_concurrency)

        async def _one(i: int, p: RunParams) -> RunResult:
            async with sem:
                return await self.run_one(i, p)

        log.info("runs_start count=%d concurrency=%d", len(params_list), self.run_concurrency)
        results: List[RunResult] = list(await asyncio.gather(*[_one(i, p) for i, p in enumerate(params_list)]))
        failures = [r for r in results if r.error is not None]
        if failures:
            for r in failures[:10]:
                log.warning("run_failed index=%d err=%s", r.index, r.error)
            if len(failures) > 10:
                log.warning("run_failed_more count=%d", len(failures))

        overall = fold_summaries(r.summary for r in results if r.error is None)
        name = strategy or (params_list[0].strategy if params_list else "")
        log.info("runs_done count=%d failed=%d trades=%d pnl=%.2f", len(results), len(failures), overall.total_trades, overall.cumulative_pnl)
        return OverallResult(strategy=name, overall=overall, runs=results)
