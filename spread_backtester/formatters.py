from __future__ import annotations

from collections import Counter
from dataclasses import asdict
import json
from typing import Any, Dict, List, Optional

from .aggregate import pnl_curve
from .models import OverallResult, RunResult, RunSummary
from .timeutil import parse_tz, to_local


def _fmt_ms(ts_ms: Optional[int], tz_name: str = "UTC") -> str:
    if ts_ms is None:
        return "-"
    return to_local(ts_ms, parse_tz(tz_name)).strftime("%Y-%m-%d %H:%M")


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:g}"


def max_drawdown(curve: List[float]) -> float:
    peak = 0.0
    worst = 0.0
    for v in curve:
        peak = max(peak, v)
        worst = min(worst, v - peak)
    return round(worst, 2)


def _summary_line(s: RunSummary) -> str:
    return (
        f"trades={s.total_trades} wins={s.wins} losses={s.losses} breakeven={s.breakeven} "
        f"pnl={s.cumulative_pnl:.2f} win%={s.win_rate_pct:.2f} loss%={s.loss_rate_pct:.2f} "
        f"avg={s.avg_pnl_per_trade:.2f}"
    )


def format_run(run: RunResult, *, include_trades: bool = True) -> str:
    p = run.params
    tz_name = str(p.get("timezone") or "UTC")
    expiry = p.get("expiry") or p.get("expiry_mode")
    lines = [
        f"Run #{run.index} | {p.get('strategy')} | {p.get('symbol')} {p.get('timeframe')} | "
        f"{p.get('from_date')}..{p.get('to_date')} | expiry={expiry} | sig={run.signature[:12]}",
    ]
    if run.error:
        lines.append(f"  ERROR: {run.error}")
        return "\n".join(lines)

    lines.append("  " + _summary_line(run.summary))
    lines.append(f"  max_drawdown={max_drawdown(pnl_curve(run.trades)):.2f}")

    skipped = Counter(t.reason for t in run.trades if not t.took)
    if skipped:
        lines.append("  skipped: " + ", ".join(f"{k}={v}" for k, v in sorted(skipped.items())))

    if include_trades:
        for t in run.trades:
            if not t.took:
                continue
            legs = " ".join(
                f"{f.role}:{f.instrument.id}@{_fmt_price(f.entry_price)}->{_fmt_price(f.exit_price)}"
                for f in t.legs
            )
            lines.append(
                f"  {t.date} #{t.trade_index_in_day} {_fmt_ms(t.entry_time_ms, tz_name)} -> "
                f"{_fmt_ms(t.exit_time_ms, tz_name)} {t.exit_reason} {legs} net={t.net_pnl:.2f}"
            )
    return "\n".join(lines)


def format_report(result: OverallResult, *, include_trades: bool = True) -> str:
    lines = [f"{result.strategy} | runs={len(result.runs)}"]
    for run in result.runs:
        lines.append(format_run(run, include_trades=include_trades))
    lines.append("OVERALL | " + _summary_line(result.overall))
    return "\n".join(lines)


def to_jsonable(result: OverallResult) -> Dict[str, Any]:
    return asdict(result)


def to_json(result: OverallResult, *, indent: Optional[int] = 2) -> str:
    """Deterministic rendering: same result, same bytes."""
    return json.dumps(to_jsonable(result), sort_keys=True, indent=indent, ensure_ascii=True, allow_nan=False)
