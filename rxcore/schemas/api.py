"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from rxcore.schemas.prescription import Prescription


# ---------------------------------------------------------------------------
# Prescriptions
# ---------------------------------------------------------------------------

class PrescriptionSummary(BaseModel):
    id: str
    status: str
    patient_id: str | None
    pharmacy_code: str | None
    medications: list[str]
    authored_on: datetime | None
    dosage: str | None
    dispense_quantity: float

    @classmethod
    def from_prescription(cls, prescription: Prescription) -> PrescriptionSummary:
        dosage = prescription.dosage
        return cls(
            id=prescription.id,
            status=prescription.status.value,
            patient_id=prescription.patient_id,
            pharmacy_code=prescription.pharmacy_code,
            medications=prescription.medication_names,
            authored_on=prescription.authored_on,
            dosage=dosage.text if dosage else None,
            dispense_quantity=prescription.dispense_quantity,
        )


class PrescriptionListResponse(BaseModel):
    total: int
    skipped: int = 0
    prescriptions: list[PrescriptionSummary]


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    code: str = "cancelled"


# ---------------------------------------------------------------------------
# Validation feedback
# ---------------------------------------------------------------------------

class FeedbackRequest(BaseModel):
    issue_id: str
    is_positive: bool
    user_id: str | None = None


class FeedbackResponse(BaseModel):
    queued: bool


# ---------------------------------------------------------------------------
# Adherence interventions
# ---------------------------------------------------------------------------

class InterventionRequest(BaseModel):
    type: str = Field(..., min_length=1, max_length=64)
    notes: str | None = None
    user_id: str


class InterventionResponse(BaseModel):
    id: str
    patient_id: str
    type: str
    user_id: str
    date: datetime


class ReminderRunResponse(BaseModel):
    days_before: int
    sent: int


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str
    environment: str
    database: str
    ai_model: str
