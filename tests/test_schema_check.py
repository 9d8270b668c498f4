"""Tests for JSON schema validation of inbound payloads."""

from rxcore.schemas.fhir import (
    MEDICATION_REQUEST_SCHEMA,
    REMOTE_ISSUE_SCHEMA,
    REMOTE_VALIDATION_RESPONSE_SCHEMA,
)
from rxcore.services.schema_check import validate_against_schema


def _make_request(**overrides):
    resource = {
        "resourceType": "MedicationRequest",
        "id": "rx-001",
        "status": "active",
        "subject": {"reference": "Patient/9434765919"},
        "medicationCodeableConcept": {"coding": [{"display": "Metformin 500mg tablets"}]},
    }
    resource.update(overrides)
    return resource


def test_valid_medication_request():
    assert validate_against_schema(_make_request(), MEDICATION_REQUEST_SCHEMA) == []


def test_medication_reference_is_accepted():
    resource = _make_request()
    del resource["medicationCodeableConcept"]
    resource["medicationReference"] = {"display": "Warfarin 5mg tablets"}
    assert validate_against_schema(resource, MEDICATION_REQUEST_SCHEMA) == []


def test_missing_required_fields():
    errors = validate_against_schema({"resourceType": "MedicationRequest"}, MEDICATION_REQUEST_SCHEMA)
    assert any("id" in e for e in errors)
    assert any("status" in e for e in errors)
    assert any("subject" in e for e in errors)


def test_medication_is_required():
    resource = _make_request()
    del resource["medicationCodeableConcept"]
    assert validate_against_schema(resource, MEDICATION_REQUEST_SCHEMA)


def test_invalid_status():
    errors = validate_against_schema(_make_request(status="dispensed"), MEDICATION_REQUEST_SCHEMA)
    assert len(errors) > 0


def test_remote_issue_confidence_bounds():
    issue = {
        "type": "allergy",
        "severity": "critical",
        "description": "Penicillin allergy",
        "confidence": 1.4,
    }
    assert validate_against_schema(issue, REMOTE_ISSUE_SCHEMA)
    issue["confidence"] = 0.9
    assert validate_against_schema(issue, REMOTE_ISSUE_SCHEMA) == []


def test_remote_response_requires_issue_list():
    assert validate_against_schema({}, REMOTE_VALIDATION_RESPONSE_SCHEMA)
    assert validate_against_schema({"issues": []}, REMOTE_VALIDATION_RESPONSE_SCHEMA) == []
