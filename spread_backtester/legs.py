from __future__ import annotations

from dataclasses import dataclass
import math
import re
from typing import Optional, Sequence

from .errors import ConfigError
from .models import Instrument, Moneyness, OptionType

_MONEYNESS_RE = re.compile(r"^(ATM|ITM|OTM)(\d*)$")

MONEYNESS_OUT_OF_RANGE = "MONEYNESS_OUT_OF_RANGE"


def parse_moneyness(raw: object) -> Moneyness:
    """ATM / ATM0, ITM<n>, OTM<n>. A bare ITM or OTM means one step."""
    s = str(raw or "").strip().upper()
    m = _MONEYNESS_RE.match(s)
    if not m:
        raise ConfigError(f"Invalid moneyness {raw!r}; use ATM, ITM<n> or OTM<n>")
    kind, digits = m.group(1), m.group(2)
    if kind == "ATM":
        if digits and int(digits) != 0:
            raise ConfigError(f"Invalid moneyness {raw!r}; ATM takes no step count")
        return Moneyness("ATM", 0)
    steps = int(digits) if digits else 1
    return Moneyness(kind, steps)  # type: ignore[arg-type]


def default_atm_prefer(option_type: OptionType) -> str:
    return "below" if option_type == "PUT" else "above"


def pick_atm(ladder: Sequence[Instrument], reference: float, prefer: str = "below") -> int:
    """Index of the strike closest to `reference`, or -1.

    Exact ties go to the strike at-or-below the reference with
    prefer="below", at-or-above with prefer="above".
    """
    if not ladder or reference is None or not math.isfinite(reference):
        return -1
    best = -1
    best_diff = math.inf
    for i, inst in enumerate(ladder):
        diff = abs(inst.strike - reference)
        if diff < best_diff:
            best, best_diff = i, diff
        elif diff == best_diff and best >= 0:
            cur = ladder[best].strike
            if prefer == "above":
                if inst.strike >= reference and cur < reference:
                    best = i
            elif inst.strike <= reference and cur > reference:
                best = i
    return best


@dataclass(frozen=True)
class LegPick:
    instrument: Optional[Instrument]
    index: int
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.instrument is not None


def moneyness_offset(moneyness: Moneyness, option_type: OptionType) -> int:
    """Index offset on an ascending-strike ladder."""
    if moneyness.kind == "ATM":
        return 0
    up = moneyness.steps if moneyness.kind == "ITM" else -moneyness.steps
    return up if option_type == "PUT" else -up


def pick_by_moneyness(
    ladder: Sequence[Instrument],
    atm_index: int,
    moneyness: Moneyness,
    option_type: OptionType,
) -> LegPick:
    if atm_index < 0 or atm_index >= len(ladder):
        return LegPick(None, -1, MONEYNESS_OUT_OF_RANGE)
    idx = atm_index + moneyness_offset(moneyness, option_type)
    if idx < 0 or idx >= len(ladder):
        return LegPick(None, idx, MONEYNESS_OUT_OF_RANGE)
    return LegPick(ladder[idx], idx)
