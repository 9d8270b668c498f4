"""
Registry-facing prescription models.

The registry speaks FHIR R4 ``MedicationRequest``. These models keep only the
parts the core reads, accept the camelCase wire names through aliases, and
normalise the two ways a medication can be carried (``medicationReference``
or ``medicationCodeableConcept``) into one tagged union.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UNKNOWN_MEDICATION = "Unknown Medication"


class PrescriptionStatus(str, Enum):
    ACTIVE = "active"
    ON_HOLD = "on-hold"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    ENTERED_IN_ERROR = "entered-in-error"
    STOPPED = "stopped"
    DRAFT = "draft"
    UNKNOWN = "unknown"


class FhirModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Coding(FhirModel):
    system: str | None = None
    code: str | None = None
    display: str | None = None


class Reference(FhirModel):
    reference: str | None = None
    display: str | None = None

    @property
    def id(self) -> str | None:
        """Trailing id of a ``Type/id`` reference."""
        if not self.reference:
            return None
        return self.reference.rstrip("/").rsplit("/", 1)[-1]


class Quantity(FhirModel):
    value: float | None = None
    unit: str | None = None
    system: str | None = None
    code: str | None = None


class Period(FhirModel):
    start: datetime | None = None
    end: datetime | None = None

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


# ---------------------------------------------------------------------------
# Medication: tagged union
# ---------------------------------------------------------------------------

class MedicationReference(FhirModel):
    kind: Literal["reference"] = "reference"
    reference: str | None = None
    display: str | None = None

    @property
    def display_name(self) -> str:
        return self.display or UNKNOWN_MEDICATION


class MedicationConcept(FhirModel):
    kind: Literal["codeable_concept"] = "codeable_concept"
    coding: list[Coding] = Field(default_factory=list)
    text: str | None = None

    @property
    def display_name(self) -> str:
        for coding in self.coding:
            if coding.display:
                return coding.display
        return self.text or UNKNOWN_MEDICATION


Medication = Annotated[
    Union[MedicationReference, MedicationConcept], Field(discriminator="kind")
]


# ---------------------------------------------------------------------------
# Dosage
# ---------------------------------------------------------------------------

class TimingRepeat(FhirModel):
    frequency: float | None = None
    period: float | None = None
    period_unit: str | None = Field(default=None, alias="periodUnit")


class Timing(FhirModel):
    repeat: TimingRepeat | None = None


class DoseAndRate(FhirModel):
    dose_quantity: Quantity | None = Field(default=None, alias="doseQuantity")


class DosageInstruction(FhirModel):
    text: str | None = None
    timing: Timing | None = None
    dose_and_rate: list[DoseAndRate] = Field(default_factory=list, alias="doseAndRate")

    @property
    def repeat(self) -> TimingRepeat | None:
        return self.timing.repeat if self.timing else None

    @property
    def dose(self) -> Quantity | None:
        for entry in self.dose_and_rate:
            if entry.dose_quantity is not None:
                return entry.dose_quantity
        return None

    def describe(self) -> str:
        """Human-readable dose such as ``500mg``, empty when unknown."""
        dose = self.dose
        if dose is None or dose.value is None:
            return ""
        value = int(dose.value) if float(dose.value).is_integer() else dose.value
        return f"{value}{dose.unit or ''}"


class DispenseRequest(FhirModel):
    validity_period: Period | None = Field(default=None, alias="validityPeriod")
    quantity: Quantity | None = None
    performer: Reference | None = None


# ---------------------------------------------------------------------------
# Prescription
# ---------------------------------------------------------------------------

class Prescription(FhirModel):
    resource_type: str = Field(default="MedicationRequest", alias="resourceType")
    id: str
    status: PrescriptionStatus
    intent: str | None = None
    medications: list[Medication] = Field(min_length=1)
    subject: Reference
    authored_on: datetime | None = Field(default=None, alias="authoredOn")
    requester: Reference | None = None
    dosage_instruction: list[DosageInstruction] = Field(
        default_factory=list, alias="dosageInstruction"
    )
    dispense_request: DispenseRequest | None = Field(default=None, alias="dispenseRequest")

    @field_validator("authored_on")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="before")
    @classmethod
    def collect_medications(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "medications" in data:
            return data
        data = dict(data)
        medications: list[dict[str, Any]] = []
        if data.get("medicationReference"):
            medications.append({"kind": "reference", **data["medicationReference"]})
        if data.get("medicationCodeableConcept"):
            medications.append(
                {"kind": "codeable_concept", **data["medicationCodeableConcept"]}
            )
        data["medications"] = medications
        return data

    @property
    def patient_id(self) -> str | None:
        return self.subject.id

    @property
    def pharmacy_code(self) -> str | None:
        if self.dispense_request and self.dispense_request.performer:
            return self.dispense_request.performer.id
        return None

    @property
    def medication_names(self) -> list[str]:
        return [m.display_name for m in self.medications]

    @property
    def dosage(self) -> DosageInstruction | None:
        return self.dosage_instruction[0] if self.dosage_instruction else None

    @property
    def dispense_quantity(self) -> float:
        if self.dispense_request and self.dispense_request.quantity:
            return self.dispense_request.quantity.value or 0
        return 0

    @property
    def issued_on(self) -> date | None:
        return self.authored_on.date() if self.authored_on else None


class PrescriptionBundle(BaseModel):
    total: int = 0
    prescriptions: list[Prescription] = Field(default_factory=list)
    skipped: int = 0


class StatusReason(BaseModel):
    code: str
    display: str
    text: str | None = None


class PrescriptionSearchParams(BaseModel):
    """Filters accepted by the list and search operations."""

    status: list[PrescriptionStatus] | None = None
    date_written: date | None = None
    date_from: date | None = None
    date_to: date | None = None
    count: int | None = Field(default=None, ge=1)
    sort: str | None = None
    search_term: str | None = None
    medication_name: str | None = None
    patient_name: str | None = None
    nhs_number: str | None = None
    prescriber_id: str | None = None
    prescription_id: str | None = None
    include_history: bool = False

    def to_query(self) -> dict[str, str]:
        """Map to FHIR search parameters."""
        query: dict[str, str] = {}
        if self.status:
            query["status"] = ",".join(s.value for s in self.status)
        if self.date_written:
            query["dateWritten"] = self.date_written.isoformat()
        if self.date_from:
            query["dateWritten:ge"] = self.date_from.isoformat()
        if self.date_to:
            query["dateWritten:le"] = self.date_to.isoformat()
        if self.count:
            query["_count"] = str(self.count)
        if self.sort:
            query["_sort"] = self.sort
        if self.prescription_id:
            query["identifier"] = self.prescription_id
        if self.nhs_number:
            query["subject"] = self.nhs_number
        if self.prescriber_id:
            query["requester"] = self.prescriber_id
        if self.medication_name:
            query["medication.display"] = self.medication_name
        if self.patient_name:
            query["subject.display"] = self.patient_name
        if self.search_term:
            query["_content"] = self.search_term
        if self.include_history:
            query["_include"] = "MedicationRequest:history"
        return query
