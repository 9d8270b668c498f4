"""
Days-supply estimation from a dispensed quantity and its dosing.

Structured timing (``frequency`` per ``period`` ``periodUnit``) wins when it
is usable; otherwise the free-text instruction is matched against common
phrasings; otherwise one dose a day is assumed. One unit is one dose.

A return value of 0 means "cannot estimate" and callers must skip whatever
calculation needed it rather than read it as zero days of therapy.
"""

from __future__ import annotations

import math

from rxcore.schemas.prescription import DosageInstruction

# Multiplier that turns "frequency per period" into "per day".
_PER_DAY = {
    "h": 24.0,
    "hour": 24.0,
    "d": 1.0,
    "day": 1.0,
    "wk": 1 / 7,
    "week": 1 / 7,
    "mo": 1 / 30,
    "month": 1 / 30,
}

# Checked in order; first match wins.
_TEXT_PATTERNS: list[tuple[tuple[str, ...], float]] = [
    (("once daily", "once a day"), 1),
    (("twice daily", "twice a day", "bid"), 2),
    (("three times", "thrice", "tid"), 3),
    (("four times", "qid"), 4),
    (("every 12 hours",), 2),
    (("every 8 hours",), 3),
    (("every 6 hours",), 4),
]


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (``round`` rounds to even)."""
    return int(math.floor(value + 0.5))


def _structured_rate(dosage: DosageInstruction) -> float:
    repeat = dosage.repeat
    if repeat is None or not (repeat.frequency and repeat.period and repeat.period_unit):
        return 0.0
    multiplier = _PER_DAY.get(repeat.period_unit.lower())
    if multiplier is None:
        return 0.0
    return repeat.frequency / repeat.period * multiplier


def _text_rate(text: str | None) -> float:
    if not text:
        return 0.0
    lowered = text.lower()
    for phrases, rate in _TEXT_PATTERNS:
        if any(phrase in lowered for phrase in phrases):
            return float(rate)
    return 0.0


def doses_per_day(dosage: DosageInstruction | None) -> float:
    """Daily dose count; defaults to 1 when nothing can be parsed."""
    if dosage is None:
        return 1.0
    return _structured_rate(dosage) or _text_rate(dosage.text) or 1.0


def estimate_days_supply(
    quantity: float | None, dosage: DosageInstruction | str | None
) -> int:
    """``round(quantity / doses_per_day)``, or 0 when it cannot be estimated."""
    if isinstance(dosage, str):
        dosage = DosageInstruction(text=dosage) if dosage.strip() else None
    if not quantity or quantity <= 0 or dosage is None:
        return 0
    return round_half_up(quantity / doses_per_day(dosage))
