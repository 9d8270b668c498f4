"""Tests for days-supply estimation."""

from rxcore.schemas.prescription import DosageInstruction
from rxcore.services.days_supply import doses_per_day, estimate_days_supply, round_half_up


def _make_dosage(frequency=None, period=None, unit=None, text=None):
    data = {"text": text}
    if frequency is not None:
        data["timing"] = {"repeat": {"frequency": frequency, "period": period, "periodUnit": unit}}
    return DosageInstruction.model_validate(data)


def test_twice_daily_text():
    assert estimate_days_supply(30, "1 tablet twice daily") == 15


def test_text_phrasings():
    assert doses_per_day(_make_dosage(text="Take ONE tablet once a day")) == 1
    assert doses_per_day(_make_dosage(text="1 cap BID")) == 2
    assert doses_per_day(_make_dosage(text="two tablets three times a day")) == 3
    assert doses_per_day(_make_dosage(text="one four times daily")) == 4
    assert doses_per_day(_make_dosage(text="every 8 hours")) == 3
    assert doses_per_day(_make_dosage(text="every 6 hours when required")) == 4


def test_structured_timing_units():
    assert estimate_days_supply(28, _make_dosage(1, 1, "d")) == 28
    assert estimate_days_supply(4, _make_dosage(1, 1, "wk")) == 28
    assert estimate_days_supply(21, _make_dosage(1, 8, "h")) == 7
    assert estimate_days_supply(3, _make_dosage(1, 1, "mo")) == 90


def test_structured_timing_wins_over_text():
    dosage = _make_dosage(3, 1, "d", text="twice daily")
    assert estimate_days_supply(30, dosage) == 10


def test_unrecognised_text_defaults_to_once_daily():
    assert estimate_days_supply(28, "as directed by your doctor") == 28


def test_unusable_structured_timing_falls_back_to_text():
    dosage = _make_dosage(2, 1, "fortnight", text="twice daily")
    assert estimate_days_supply(28, dosage) == 14


def test_cannot_estimate_returns_zero():
    assert estimate_days_supply(0, "twice daily") == 0
    assert estimate_days_supply(-5, "twice daily") == 0
    assert estimate_days_supply(None, "twice daily") == 0
    assert estimate_days_supply(30, None) == 0
    assert estimate_days_supply(30, "") == 0


def test_halves_round_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert estimate_days_supply(5, "twice daily") == 3
