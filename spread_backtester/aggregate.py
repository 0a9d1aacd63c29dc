from __future__ import annotations

from typing import Iterable, List

from .models import RunSummary, Trade, finite_or


def _finalize(total: int, wins: int, losses: int, cumulative: float) -> RunSummary:
    cum = round(cumulative, 2)
    return RunSummary(
        total_trades=total,
        wins=wins,
        losses=losses,
        breakeven=max(total - wins - losses, 0),
        cumulative_pnl=cum,
        win_rate_pct=round(wins / total * 100, 2) if total else 0.0,
        loss_rate_pct=round(losses / total * 100, 2) if total else 0.0,
        avg_pnl_per_trade=round(cumulative / total, 2) if total else 0.0,
    )


def summarize(trades: Iterable[Trade]) -> RunSummary:
    """Fold taken trades into a run summary; skipped rows do not count."""
    total = wins = losses = 0
    cumulative = 0.0
    for t in trades:
        if not t.took:
            continue
        pnl = finite_or(t.net_pnl, 0.0)
        total += 1
        cumulative += pnl
        if pnl > 0:
            wins += 1
        elif pnl < 0:
            losses += 1
    return _finalize(total, wins, losses, cumulative)


def fold_summaries(summaries: Iterable[RunSummary]) -> RunSummary:
    """Sum counts and P&L across runs, then recompute the rates."""
    total = wins = losses = 0
    cumulative = 0.0
    for s in summaries:
        total += s.total_trades
        wins += s.wins
        losses += s.losses
        cumulative += finite_or(s.cumulative_pnl, 0.0)
    return _finalize(total, wins, losses, cumulative)


def pnl_curve(trades: Iterable[Trade]) -> List[float]:
    """Running cumulative net P&L after each taken trade."""
    out: List[float] = []
    acc = 0.0
    for t in trades:
        if t.took:
            acc += finite_or(t.net_pnl, 0.0)
            out.append(round(acc, 2))
    return out
