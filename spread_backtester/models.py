from __future__ import annotations
from dataclasses import dataclass, field
import math
from typing import Any, Dict, List, Literal, Optional, Tuple

Trend = Literal["UP", "DOWN"]
OptionType = Literal["CALL", "PUT"]
LegRole = Literal["MAIN", "HEDGE"]
LegSide = Literal["SHORT", "LONG"]
MoneynessKind = Literal["ATM", "ITM", "OTM"]


def finite_or(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    """float(value) when it is a finite number, else default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    return v if math.isfinite(v) else default


@dataclass(frozen=True)
class Candle:
    ts_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class SupertrendState:
    atr: float
    upper_band: float
    lower_band: float
    line: float
    trend: Trend
    buy_signal: bool = False
    sell_signal: bool = False


@dataclass(frozen=True)
class AnnotatedCandle:
    candle: Candle
    state: Optional[SupertrendState]
    local_time: str = ""  # ISO in the run timezone

    @property
    def ts_ms(self) -> int:
        return self.candle.ts_ms

    @property
    def close(self) -> float:
        return self.candle.close

    @property
    def buy_signal(self) -> bool:
        return bool(self.state and self.state.buy_signal)

    @property
    def sell_signal(self) -> bool:
        return bool(self.state and self.state.sell_signal)

    @property
    def trend(self) -> Optional[Trend]:
        return self.state.trend if self.state else None


@dataclass(frozen=True)
class Instrument:
    id: str
    strike: float
    option_type: OptionType
    expiry: str


@dataclass(frozen=True)
class OptionChain:
    expiry: str
    window_from_ms: int
    window_to_ms: int
    puts: Tuple[Instrument, ...] = ()
    calls: Tuple[Instrument, ...] = ()

    def ladder(self, option_type: OptionType) -> Tuple[Instrument, ...]:
        return self.puts if option_type == "PUT" else self.calls


@dataclass(frozen=True)
class Tick:
    instrument_id: str
    ts_ms: int
    price: float


@dataclass(frozen=True)
class Moneyness:
    kind: MoneynessKind
    steps: int = 0

    @property
    def label(self) -> str:
        return "ATM" if self.kind == "ATM" else f"{self.kind}{self.steps}"


@dataclass(frozen=True)
class LegSpec:
    role: LegRole
    side: LegSide
    option_type: OptionType
    moneyness: Moneyness


@dataclass(frozen=True)
class LegFill:
    role: LegRole
    side: LegSide
    instrument: Instrument
    moneyness: str
    entry_price: float
    exit_price: float
    entry_tick_ms: int
    exit_tick_ms: int
    points: float


@dataclass(frozen=True)
class Trade:
    """One result row: a completed trade (took=True) or a typed skip."""
    date: str
    took: bool
    reason: Optional[str] = None
    trade_index_in_day: Optional[int] = None
    entry_time_ms: Optional[int] = None
    exit_time_ms: Optional[int] = None
    planned_exit_time_ms: Optional[int] = None
    entry_reason: Optional[str] = None
    exit_reason: Optional[str] = None
    exit_via: Optional[str] = None
    expiry: Optional[str] = None
    underlying_price: Optional[float] = None
    legs: Tuple[LegFill, ...] = ()
    qty: Optional[float] = None
    net_points: Optional[float] = None
    net_pnl: Optional[float] = None
    stop_loss_price: Optional[float] = None
    target_price: Optional[float] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RunSummary:
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    breakeven: int = 0
    cumulative_pnl: float = 0.0
    win_rate_pct: float = 0.0
    loss_rate_pct: float = 0.0
    avg_pnl_per_trade: float = 0.0


@dataclass(frozen=True)
class RunResult:
    index: int
    signature: str
    params: Dict[str, Any]
    summary: RunSummary
    trades: Tuple[Trade, ...] = ()
    debug: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass(frozen=True)
class OverallResult:
    strategy: str
    overall: RunSummary
    runs: List[RunResult] = field(default_factory=list)
