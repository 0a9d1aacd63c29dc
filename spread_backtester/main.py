from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from .config import Config, load_config
from .errors import ConfigError
from .formatters import format_report, to_json
from .models import OverallResult
from .providers.delta import DeltaCandleProvider
from .runner import BacktestRunner
from .store import CandleSource, load_jsonl_store


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


async def run_backtest(cfg: Config) -> OverallResult:
    params = cfg.run_params()
    store = load_jsonl_store(
        cfg.data.candles_path if cfg.data.candles_source == "jsonl" else None,
        cfg.data.ticks_path or None,
        contract_type=cfg.data.contract_type,
    )

    delta: Optional[DeltaCandleProvider] = None
    candles: CandleSource = store
    if cfg.data.candles_source == "delta":
        delta = DeltaCandleProvider(
            cfg.data.delta_base_url,
            rest_timeout_s=cfg.data.rest_timeout_s,
            rest_max_retries=cfg.data.rest_max_retries,
            rest_backoff_s=cfg.data.rest_backoff_s,
        )
        candles = delta

    runner = BacktestRunner(
        candles,
        store,
        run_concurrency=cfg.runner.run_concurrency,
        run_timeout_s=cfg.runner.run_timeout_s,
    )
    try:
        return await runner.run_all(params)
    finally:
        # Close shared REST session cleanly.
        if delta is not None:
            await delta.close()


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Supertrend option-spread backtester")
    p.add_argument("--config", required=True, help="Path to YAML config")
    p.add_argument("--out", help="Write the JSON result to this path")
    p.add_argument("--report", action="store_true", help="Print a text report")
    args = p.parse_args(argv)

    try:
        cfg = load_config(args.config)
        _setup_logging(cfg.app.log_level)
        result = asyncio.run(run_backtest(cfg))
    except ConfigError as e:
        logging.getLogger("main").error("config_error err=%s", e)
        return 2
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1

    payload = to_json(result)
    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            f.write(payload + "\n")
    if args.report:
        print(format_report(result))
    elif not args.out:
        print(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
