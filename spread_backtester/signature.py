from __future__ import annotations

import hashlib
import json
import logging
from typing import Dict

from .config import RunParams

log = logging.getLogger("signature")

# Fields that shape signal timing; a change here changes every trade.
SIGNAL_KEYS = ("symbol", "timeframe", "timezone", "atr_period", "multiplier", "use_wilder", "warmup_bars")


def run_signature(params: RunParams) -> Dict[str, object]:
    return params.as_dict()


def stable_run_signature(params: RunParams) -> str:
    sig = run_signature(params)
    payload = json.dumps(sig, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def signal_signature(params: RunParams) -> Dict[str, object]:
    sig = run_signature(params)
    return {k: sig[k] for k in SIGNAL_KEYS}


def log_run_signature(index: int, params: RunParams) -> None:
    log.info("run_inputs index=%d sig=%s signal=%s", index, stable_run_signature(params)[:12], signal_signature(params))
    if params.stop_loss_pct <= 0 and params.target_pct <= 0:
        log.warning("run_inputs index=%d stop_loss_pct and target_pct unset; exits are signal/time only.", index)
