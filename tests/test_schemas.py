"""Tests for the registry-facing and result models."""

from datetime import date, timezone

import pytest
from pydantic import ValidationError

from rxcore.schemas.adherence import AdherenceStatus
from rxcore.schemas.prescription import (
    MedicationConcept,
    Prescription,
    PrescriptionSearchParams,
    PrescriptionStatus,
    Reference,
)
from rxcore.schemas.validation import IssueType, Severity, ValidationIssue, ValidationResult


def _make_issue(severity, ai_generated=False):
    return ValidationIssue(
        type=IssueType.DRUG_INTERACTION,
        severity=severity,
        description="test",
        ai_generated=ai_generated,
    )


def test_prescription_from_registry_payload(make_request):
    prescription = Prescription.model_validate(
        make_request(authored_on="2026-09-01T09:00:00", repeat={"frequency": 2, "period": 1, "periodUnit": "d"})
    )

    assert isinstance(prescription.medications[0], MedicationConcept)
    assert prescription.authored_on.tzinfo is timezone.utc  # naive timestamps are UTC
    assert prescription.issued_on == date(2026, 9, 1)
    assert prescription.dosage.repeat.period_unit == "d"
    assert prescription.dispense_quantity == 56


def test_prescription_without_medication_is_rejected(make_request):
    resource = make_request()
    del resource["medicationCodeableConcept"]
    with pytest.raises(ValidationError):
        Prescription.model_validate(resource)


def test_concept_display_falls_back_to_text_then_unknown():
    assert MedicationConcept(text="Lisinopril 10mg").display_name == "Lisinopril 10mg"
    assert MedicationConcept().display_name == "Unknown Medication"


def test_reference_id_is_trailing_segment():
    assert Reference(reference="Patient/9434765919").id == "9434765919"
    assert Reference().id is None


def test_search_params_to_fhir_query():
    params = PrescriptionSearchParams(
        status=[PrescriptionStatus.ACTIVE],
        date_from=date(2025, 10, 19),
        date_to=date(2026, 10, 19),
        nhs_number="9434765919",
        prescriber_id="G8123456",
    )
    assert params.to_query() == {
        "status": "active",
        "dateWritten:ge": "2025-10-19",
        "dateWritten:le": "2026-10-19",
        "subject": "9434765919",
        "requester": "G8123456",
    }


def test_severity_ordering():
    assert Severity.highest([Severity.LOW, Severity.CRITICAL, Severity.HIGH]) is Severity.CRITICAL
    assert Severity.highest([]) is Severity.NONE


def test_result_from_issues():
    result = ValidationResult.from_issues("rx-1", [_make_issue(Severity.MEDIUM)], incomplete_checks=["allergy"])

    assert result.severity is Severity.MEDIUM
    assert not result.is_valid
    assert result.degraded
    assert result.incomplete_checks == ("allergy",)


def test_merging_recomputes_severity_without_dedup():
    base = ValidationResult.from_issues("rx-1", [_make_issue(Severity.HIGH)])
    extra = [_make_issue(Severity.CRITICAL, ai_generated=True), _make_issue(Severity.HIGH, ai_generated=True)]

    merged = base.with_additional_issues(extra)

    assert len(merged.issues) == 3
    assert merged.severity is Severity.CRITICAL
    assert merged.ai_enhanced
    assert merged.id == base.id
    assert base.issues == (base.issues[0],)  # original untouched


def test_issue_confidence_bounds():
    with pytest.raises(ValidationError):
        ValidationIssue(type=IssueType.ALLERGY, severity=Severity.LOW, description="x", confidence=1.2)


def test_adherence_status_buckets():
    assert AdherenceStatus.from_score(90) is AdherenceStatus.OPTIMAL
    assert AdherenceStatus.from_score(89) is AdherenceStatus.GOOD
    assert AdherenceStatus.from_score(75) is AdherenceStatus.GOOD
    assert AdherenceStatus.from_score(74) is AdherenceStatus.FAIR
    assert AdherenceStatus.from_score(50) is AdherenceStatus.FAIR
    assert AdherenceStatus.from_score(49) is AdherenceStatus.POOR
    assert AdherenceStatus.from_score(None) is AdherenceStatus.UNKNOWN
