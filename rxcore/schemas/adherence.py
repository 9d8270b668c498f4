"""Adherence snapshot models."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field


class AdherenceStatus(str, Enum):
    OPTIMAL = "optimal"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    UNKNOWN = "unknown"

    @classmethod
    def from_score(cls, score: int | None) -> AdherenceStatus:
        if score is None or score < 0:
            return cls.UNKNOWN
        if score >= 90:
            return cls.OPTIMAL
        if score >= 75:
            return cls.GOOD
        if score >= 50:
            return cls.FAIR
        return cls.POOR


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"
    UNKNOWN = "unknown"


class MedicationAdherenceEntry(BaseModel):
    name: str
    score: int = Field(ge=0, le=100)
    status: AdherenceStatus
    last_filled: date | None = None
    next_due: date | None = None
    days_supply: int = 0
    fills: int = 0


class AdherenceRecord(BaseModel):
    patient_id: str
    score: int = Field(ge=0, le=100)
    status: AdherenceStatus
    trend: Trend
    last_calculated: datetime
    medications: list[MedicationAdherenceEntry] = Field(default_factory=list)
    last_refill_date: date | None = None
    next_refill_due: date | None = None
    days_late: int | None = None


class InterventionCandidate(BaseModel):
    patient_id: str
    patient_name: str | None = None
    score: int
    status: AdherenceStatus
    trend: Trend
    medications: list[MedicationAdherenceEntry] = Field(default_factory=list)
    last_intervention: datetime | None = None
