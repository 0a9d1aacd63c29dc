from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import tzinfo
from typing import Any, Dict, List, Optional, Tuple
import os
import yaml

from .errors import ConfigError
from .legs import default_atm_prefer, parse_moneyness
from .models import LegSpec, OptionType, finite_or
from .timeutil import (
    Interval,
    local_ms,
    normalize_expiry,
    normalize_weekdays,
    parse_date,
    parse_hhmm,
    parse_interval,
    parse_tz,
)


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


@dataclass(frozen=True)
class StrategyPreset:
    option_type: OptionType
    direction: str  # BULLISH | BEARISH


STRATEGIES: Dict[str, StrategyPreset] = {
    "bull_put_spread": StrategyPreset(option_type="PUT", direction="BULLISH"),
    "bear_call_spread": StrategyPreset(option_type="CALL", direction="BEARISH"),
}

EXPIRY_MODES = {"FIXED": "FIXED", "AUTO": "AUTO", "AUTO_DAILY": "AUTO"}
ENTRY_MODES = ("signal_or_trend", "signal_only")
RISK_TIE_BREAKS = ("STOPLOSS", "TARGET")
ATM_TIE_BREAKS = ("below", "above")

# Keys of the original HTTP payloads, accepted next to the snake_case names.
_ALIASES = {
    "fromDate": "from_date",
    "toDate": "to_date",
    "fromTime": "from_time",
    "toTime": "to_time",
    "weekDays": "weekdays",
    "stockSymbol": "symbol",
    "stockName": "asset",
    "timeInterval": "timeframe",
    "expiryMode": "expiry_mode",
    "expiryDaysOut": "expiry_days_out",
    "expiryLookaheadDays": "expiry_lookahead_days",
    "mainMoneyness": "main_moneyness",
    "hedgeMoneyness": "hedge_moneyness",
    "stopLossPct": "stop_loss_pct",
    "targetPct": "target_pct",
    "atrPeriod": "atr_period",
    "changeAtrCalculation": "use_wilder",
    "maxTradesPerDay": "max_trades_per_day",
    "entryMode": "entry_mode",
    "timeExitHHmm": "time_exit_hhmm",
}


@dataclass(frozen=True)
class RunParams:
    """One validated run. Every field is part of the run signature."""
    from_date: str
    to_date: str
    symbol: str = "BTCUSD"
    asset: str = "BTC"
    currency: str = "USD"
    timeframe: str = "M5"
    from_time: str = "00:00"
    to_time: str = "23:59"
    weekdays: Tuple[str, ...] = ()
    timezone: str = "UTC"

    strategy: str = "bull_put_spread"
    main_moneyness: str = "OTM1"
    hedge_moneyness: Optional[str] = "OTM3"

    atr_period: int = 10
    multiplier: float = 3.0
    use_wilder: bool = True
    warmup_bars: Optional[int] = None

    expiry_mode: str = "FIXED"
    expiry: Optional[str] = None
    expiry_days_out: int = 0
    expiry_lookahead_days: int = 14

    stop_loss_pct: float = 30.0
    target_pct: float = 30.0
    risk_tie_break: str = "STOPLOSS"
    atm_tie_break: Optional[str] = None

    max_trades_per_day: Optional[int] = None
    entry_mode: str = "signal_or_trend"
    qty: float = 1.0
    time_exit_hhmm: Optional[str] = None
    hedge_exit_tolerance_s: int = 120

    @property
    def preset(self) -> StrategyPreset:
        return STRATEGIES[self.strategy]

    @property
    def option_type(self) -> OptionType:
        return self.preset.option_type

    @property
    def direction(self) -> str:
        return self.preset.direction

    @property
    def tz(self) -> tzinfo:
        return parse_tz(self.timezone)

    @property
    def interval(self) -> Interval:
        return parse_interval(self.timeframe)

    @property
    def analysis_from_ms(self) -> int:
        return local_ms(parse_date(self.from_date), parse_hhmm(self.from_time), self.tz)

    @property
    def analysis_to_ms(self) -> int:
        return local_ms(parse_date(self.to_date), parse_hhmm(self.to_time), self.tz)

    @property
    def effective_warmup_bars(self) -> int:
        if self.warmup_bars is not None:
            return self.warmup_bars
        return max(0, self.atr_period - 1)

    @property
    def atm_prefer(self) -> str:
        if self.atm_tie_break:
            return self.atm_tie_break
        return default_atm_prefer(self.option_type)

    def leg_specs(self) -> List[LegSpec]:
        ot = self.option_type
        legs = [LegSpec("MAIN", "SHORT", ot, parse_moneyness(self.main_moneyness))]
        if self.hedge_moneyness:
            legs.append(LegSpec("HEDGE", "LONG", ot, parse_moneyness(self.hedge_moneyness)))
        return legs

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["weekdays"] = list(self.weekdays)
        return d


def _canon_keys(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {_ALIASES.get(k, k): v for k, v in (raw or {}).items()}


_TRUE = ("1", "true", "yes", "y", "on")
_FALSE = ("0", "false", "no", "n", "off")


def _as_bool(v: Any) -> Optional[bool]:
    if isinstance(v, bool):
        return v
    if isinstance(v, int) and v in (0, 1):
        return bool(v)
    s = str(v).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    return None


def _as_int(v: Any) -> Optional[int]:
    f = finite_or(v, None)
    if f is None or f != int(f):
        return None
    return int(f)


def validate_run(raw: Dict[str, Any]) -> RunParams:
    """Check a flat run dict and build RunParams; every problem is reported at once."""
    r = _canon_keys(raw)
    known = set(RunParams.__dataclass_fields__)
    errs: List[str] = []

    unknown = sorted(k for k in r if k not in known)
    if unknown:
        errs.append(f"unknown keys: {', '.join(unknown)}")

    out: Dict[str, Any] = {k: v for k, v in r.items() if k in known}

    for k in ("from_date", "to_date"):
        if not r.get(k):
            errs.append(f"{k} is required")
            continue
        try:
            out[k] = parse_date(r[k]).isoformat()
        except ValueError as e:
            errs.append(str(e))

    for k in ("from_time", "to_time", "time_exit_hhmm"):
        if r.get(k) in (None, ""):
            continue
        try:
            t = parse_hhmm(r[k])
            out[k] = t.strftime("%H:%M:%S" if t.second else "%H:%M")
        except ValueError as e:
            errs.append(f"{k}: {e}")

    out["timezone"] = str(r.get("timezone") or "UTC").strip()
    try:
        parse_tz(out["timezone"])
    except ValueError as e:
        errs.append(str(e))

    tf = str(r.get("timeframe") or "M5").strip().upper()
    try:
        parse_interval(tf)
        out["timeframe"] = tf
    except ValueError as e:
        errs.append(str(e))

    atr = _as_int(r.get("atr_period", 10))
    if atr is None or atr < 1:
        errs.append("atr_period must be a positive integer")
    else:
        out["atr_period"] = atr

    mult = finite_or(r.get("multiplier", 3.0), None)
    if mult is None or mult <= 0:
        errs.append("multiplier must be a positive number")
    else:
        out["multiplier"] = mult

    if r.get("use_wilder") is None:
        out.pop("use_wilder", None)
    else:
        wilder = _as_bool(r["use_wilder"])
        if wilder is None:
            errs.append(f"use_wilder must be a boolean, got {r['use_wilder']!r}")
        else:
            out["use_wilder"] = wilder

    if r.get("warmup_bars") is not None:
        wb = _as_int(r["warmup_bars"])
        if wb is None or wb < 0:
            errs.append("warmup_bars must be a non-negative integer")
        else:
            out["warmup_bars"] = wb

    strategy = str(r.get("strategy") or "bull_put_spread").strip().lower()
    if strategy not in STRATEGIES:
        errs.append(f"unknown strategy {strategy!r}; use one of {', '.join(sorted(STRATEGIES))}")
    out["strategy"] = strategy

    for k in ("main_moneyness", "hedge_moneyness"):
        if k == "hedge_moneyness" and k in r and not r[k]:
            out[k] = None
            continue
        try:
            out[k] = parse_moneyness(r.get(k, "OTM1" if k == "main_moneyness" else "OTM3")).label
        except ConfigError as e:
            errs.append(f"{k}: {e}")

    em = str(r.get("expiry_mode") or "FIXED").strip().upper()
    if em not in EXPIRY_MODES:
        errs.append(f"unsupported expiry_mode {r.get('expiry_mode')!r}; use FIXED or AUTO_DAILY")
    else:
        out["expiry_mode"] = EXPIRY_MODES[em]
        exp = normalize_expiry(r.get("expiry"))
        if EXPIRY_MODES[em] == "FIXED" and not exp:
            errs.append(f"invalid expiry {r.get('expiry')!r} for FIXED mode; use YYYY-MM-DD or DDMMMYYYY")
        out["expiry"] = exp

    for k, default in (("expiry_days_out", 0), ("expiry_lookahead_days", 14), ("hedge_exit_tolerance_s", 120)):
        v = _as_int(r.get(k, default))
        if v is None or v < 0:
            errs.append(f"{k} must be a non-negative integer")
        else:
            out[k] = v

    entry_mode = str(r.get("entry_mode") or "signal_or_trend").strip().lower()
    if entry_mode not in ENTRY_MODES:
        errs.append(f"unsupported entry_mode {r.get('entry_mode')!r}; use {' or '.join(ENTRY_MODES)}")
    out["entry_mode"] = entry_mode

    try:
        out["weekdays"] = tuple(normalize_weekdays(r.get("weekdays")))
    except ValueError as e:
        errs.append(str(e))

    tb = str(r.get("risk_tie_break") or "STOPLOSS").strip().upper()
    if tb not in RISK_TIE_BREAKS:
        errs.append("risk_tie_break must be STOPLOSS or TARGET")
    out["risk_tie_break"] = tb

    if r.get("atm_tie_break"):
        atb = str(r["atm_tie_break"]).strip().lower()
        if atb not in ATM_TIE_BREAKS:
            errs.append("atm_tie_break must be below or above")
        out["atm_tie_break"] = atb

    # Lenient numeric inputs: bad values fall back rather than fail.
    out["stop_loss_pct"] = finite_or(r.get("stop_loss_pct", 30.0), 0.0)
    out["target_pct"] = finite_or(r.get("target_pct", 30.0), 0.0)
    q = finite_or(r.get("qty", 1.0), 1.0)
    out["qty"] = q if q > 0 else 1.0
    mtd = finite_or(r.get("max_trades_per_day"), None)
    out["max_trades_per_day"] = int(mtd) if mtd is not None and mtd >= 1 else None

    for k in ("symbol", "asset", "currency"):
        if k in r:
            out[k] = str(r[k] or "").strip().upper() or RunParams.__dataclass_fields__[k].default

    if not errs:
        params = RunParams(**out)
        if params.analysis_to_ms < params.analysis_from_ms:
            errs.append("to_date/to_time must be on or after from_date/from_time")
        else:
            return params

    raise ConfigError("invalid run: " + "; ".join(errs))


@dataclass
class AppConfig:
    name: str = "Supertrend Spread Backtester"
    log_level: str = "INFO"


@dataclass
class DataConfig:
    candles_source: str = "jsonl"  # jsonl | delta
    candles_path: str = ""
    ticks_path: str = ""
    contract_type: str = "OPT"
    delta_base_url: str = "https://api.delta.exchange"
    rest_timeout_s: int = 20
    rest_max_retries: int = 4
    rest_backoff_s: float = 0.8


@dataclass
class RunnerConfig:
    run_concurrency: int = 4
    run_timeout_s: Optional[float] = None


@dataclass
class Config:
    app: AppConfig
    data: DataConfig
    runner: RunnerConfig
    backtest: Dict[str, Any] = field(default_factory=dict)
    expiries: List[str] = field(default_factory=list)
    runs: List[Dict[str, Any]] = field(default_factory=list)

    def raw_runs(self) -> List[Dict[str, Any]]:
        return expand_runs(self.backtest, self.expiries, self.runs)

    def run_params(self) -> List[RunParams]:
        return validate_runs(self.raw_runs())


def expand_runs(
    defaults: Dict[str, Any],
    expiries: Optional[List[str]] = None,
    runs: Optional[List[Dict[str, Any]]] = None,
) -> List[Dict[str, Any]]:
    """expiries -> one FIXED run each; runs -> each merged over defaults; else one run."""
    base = _canon_keys(defaults)
    if expiries:
        return [{**base, "expiry_mode": "FIXED", "expiry": e} for e in expiries]
    if runs:
        return [{**base, **_canon_keys(r)} for r in runs]
    return [base] if base else []


def validate_runs(raw_runs: List[Dict[str, Any]]) -> List[RunParams]:
    if not raw_runs:
        raise ConfigError("no runs configured; provide backtest, expiries or runs")
    out: List[RunParams] = []
    errs: List[str] = []
    for i, r in enumerate(raw_runs):
        try:
            out.append(validate_run(r))
        except ConfigError as e:
            errs.append(f"run[{i}]: {e}")
    if errs:
        raise ConfigError(" | ".join(errs))
    return out


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    app = raw.get("app", {}) or {}
    data = raw.get("data", {}) or {}
    runner = raw.get("runner", {}) or {}

    try:
        cfg = Config(
            app=AppConfig(**app),
            data=DataConfig(**data),
            runner=RunnerConfig(**runner),
            backtest=dict(raw.get("backtest", {}) or {}),
            expiries=[str(e) for e in (raw.get("expiries") or [])],
            runs=[dict(r) for r in (raw.get("runs") or [])],
        )
    except TypeError as e:
        raise ConfigError(f"invalid config {path}: {e}")

    # env overrides (useful on servers)
    cfg.app.log_level = _env_override(cfg.app.log_level, "BT_LOG_LEVEL")
    cfg.data.candles_path = _env_override(cfg.data.candles_path, "BT_CANDLES_PATH")
    cfg.data.ticks_path = _env_override(cfg.data.ticks_path, "BT_TICKS_PATH")
    cfg.data.delta_base_url = _env_override(cfg.data.delta_base_url, "DELTA_BASE_URL")

    if cfg.data.candles_source not in ("jsonl", "delta"):
        raise ConfigError(f"data.candles_source must be jsonl or delta, got {cfg.data.candles_source!r}")
    conc = finite_or(cfg.runner.run_concurrency, None)
    if conc is None or conc < 1 or conc != int(conc):
        raise ConfigError("runner.run_concurrency must be >= 1")
    timeout_s = finite_or(cfg.runner.run_timeout_s, None)
    if cfg.runner.run_timeout_s is not None and (timeout_s is None or timeout_s <= 0):
        raise ConfigError("runner.run_timeout_s must be a positive number")
    cfg.runner.run_concurrency = int(conc)
    cfg.runner.run_timeout_s = timeout_s
    return cfg
