import pytest

from spread_backtester.errors import ConfigError
from spread_backtester.legs import (
    MONEYNESS_OUT_OF_RANGE,
    parse_moneyness,
    pick_atm,
    pick_by_moneyness,
)
from spread_backtester.models import Instrument, Moneyness


def _ladder(strikes, option_type="PUT"):
    prefix = "P" if option_type == "PUT" else "C"
    return tuple(Instrument(f"{prefix}-{k:g}", float(k), option_type, "2026-01-06") for k in strikes)


def test_parse_moneyness_forms():
    assert parse_moneyness("ATM") == Moneyness("ATM", 0)
    assert parse_moneyness("atm0") == Moneyness("ATM", 0)
    assert parse_moneyness("OTM") == Moneyness("OTM", 1)
    assert parse_moneyness("itm2") == Moneyness("ITM", 2)
    assert parse_moneyness("OTM3").label == "OTM3"
    for bad in ("", "XYZ", "ATM2", "OTM-1", None):
        with pytest.raises(ConfigError):
            parse_moneyness(bad)


def test_pick_atm_tie_prefers_below_or_above():
    ladder = _ladder([90, 100, 110])
    assert pick_atm(ladder, 105.0) == 1
    assert pick_atm(ladder, 105.0, prefer="above") == 2
    assert pick_atm(ladder, 95.0, prefer="below") == 0
    assert pick_atm(ladder, 99.0) == 1
    assert pick_atm(ladder, 500.0) == 2


def test_pick_atm_is_nearest_for_all_references():
    ladder = _ladder([95, 97.5, 100, 102.5, 105, 110])
    for ref10 in range(900, 1160, 5):
        ref = ref10 / 10.0
        idx = pick_atm(ladder, ref)
        best = min(abs(i.strike - ref) for i in ladder)
        assert abs(ladder[idx].strike - ref) == best
        ties = [i for i in ladder if abs(i.strike - ref) == best]
        if len(ties) > 1:
            assert ladder[idx].strike <= ref


def test_pick_atm_empty_or_bad_reference():
    assert pick_atm((), 100.0) == -1
    assert pick_atm(_ladder([100]), float("nan")) == -1


def test_atm_moneyness_is_identity():
    ladder = _ladder([97, 98, 99, 100, 101])
    for i in range(len(ladder)):
        pick = pick_by_moneyness(ladder, i, parse_moneyness("ATM0"), "PUT")
        assert pick.instrument == ladder[i]
        assert pick.index == i


def test_put_and_call_directions():
    puts = _ladder([97, 98, 99, 100, 101, 102, 103])
    calls = _ladder([97, 98, 99, 100, 101, 102, 103], "CALL")
    atm = 3

    assert pick_by_moneyness(puts, atm, Moneyness("OTM", 1), "PUT").instrument.strike == 99
    assert pick_by_moneyness(puts, atm, Moneyness("ITM", 2), "PUT").instrument.strike == 102
    assert pick_by_moneyness(calls, atm, Moneyness("OTM", 1), "CALL").instrument.strike == 101
    assert pick_by_moneyness(calls, atm, Moneyness("ITM", 2), "CALL").instrument.strike == 98


def test_out_of_range_is_typed_not_raised():
    puts = _ladder([99, 100, 101])
    pick = pick_by_moneyness(puts, 1, Moneyness("OTM", 3), "PUT")
    assert pick.instrument is None
    assert not pick.ok
    assert pick.reason == MONEYNESS_OUT_OF_RANGE
    assert pick_by_moneyness(puts, -1, Moneyness("ATM", 0), "PUT").reason == MONEYNESS_OUT_OF_RANGE
