"""Tests for the rule-based validation engine."""

import pytest

from conftest import PATIENT_ID
from rxcore.exceptions import RegistryError, ValidationDependencyError
from rxcore.models.pharmacy import AuditLog
from rxcore.schemas.validation import IssueType, Severity
from rxcore.services.clinical_context import PatientContext
from rxcore.services.knowledge import StaticKnowledgeBase, mentions
from rxcore.services.validation_engine import ValidationEngine, single_dose_mg


def _make_context(**overrides):
    data = {
        "patient_id": PATIENT_ID,
        "pharmacy_code": "FA565",
        "name": "Margaret Hughes",
        "age": 54,
        "weight_kg": 70.0,
        "allergies": [],
        "current_medications": [],
        "conditions": [],
    }
    data.update(overrides)
    return PatientContext(**data)


@pytest.fixture
def engine(registry, contexts, audit, notifier):
    return ValidationEngine(registry, contexts, StaticKnowledgeBase(), audit, notifier)


def test_no_findings_is_valid(engine, fake_registry, contexts, make_request):
    fake_registry.add(make_request("rx-001", medication="Lansoprazole 15mg capsules"))
    contexts.save(_make_context())

    result = engine.validate("rx-001")

    assert result.is_valid
    assert result.severity is Severity.NONE
    assert result.issues == ()
    assert not result.degraded
    assert result.patient_id == PATIENT_ID


def test_interaction_with_current_medication(engine, fake_registry, contexts, make_request):
    fake_registry.add(make_request("rx-001", medication="Warfarin 5mg tablets", dosage="once daily"))
    contexts.save(_make_context(current_medications=["Aspirin 75mg dispersible tablets"]))

    result = engine.validate("rx-001")

    assert len(result.issues) == 1
    issue = result.issues[0]
    assert issue.type is IssueType.DRUG_INTERACTION
    assert issue.severity is Severity.HIGH
    assert issue.medications == ("Warfarin 5mg tablets", "Aspirin 75mg dispersible tablets")
    assert result.severity is Severity.HIGH
    assert not result.is_valid


def test_interactions_are_found_from_either_side(engine, fake_registry, contexts, make_request):
    fake_registry.add(make_request("rx-001", medication="Tramadol 50mg capsules"))
    contexts.save(_make_context(current_medications=["Fluoxetine 20mg capsules"]))

    result = engine.validate("rx-001")
    assert result.severity is Severity.CRITICAL


def test_allergy_is_always_critical_and_notified(engine, fake_registry, contexts, make_request, notifier):
    fake_registry.add(make_request("rx-001", medication="Amoxicillin 500mg capsules", dosage="three times a day"))
    contexts.save(_make_context(allergies=["Penicillin allergy"]))

    result = engine.validate("rx-001")

    assert [i.type for i in result.issues] == [IssueType.ALLERGY]
    assert result.severity is Severity.CRITICAL
    assert len(notifier.events) == 1
    event = notifier.events[0]
    assert event.prescription_id == "rx-001"
    assert event.result_id == result.id
    assert event.medications == ("Amoxicillin 500mg capsules",)


def test_contraindicated_condition(engine, fake_registry, contexts, make_request):
    fake_registry.add(make_request("rx-001", medication="Propranolol 40mg tablets"))
    contexts.save(_make_context(conditions=["Asthma (moderate)"]))

    result = engine.validate("rx-001")

    assert result.issues[0].type is IssueType.CONTRAINDICATION
    assert result.issues[0].severity is Severity.CRITICAL


def test_single_dose_limit(engine, fake_registry, contexts, make_request):
    fake_registry.add(make_request(
        "rx-001", medication="Paracetamol 500mg tablets", dosage="three tablets four times daily",
        dose={"value": 3, "unit": "tablet"},
    ))
    contexts.save(_make_context())

    result = engine.validate("rx-001")

    assert result.issues[0].type is IssueType.INAPPROPRIATE_DOSAGE
    assert "1500mg" in result.issues[0].description


def test_daily_limit_uses_dose_frequency(engine, fake_registry, contexts, make_request):
    fake_registry.add(make_request(
        "rx-001", medication="Ibuprofen 400mg tablets", dosage="one tablet four times daily",
        dose={"value": 1, "unit": "tablet"},
    ))
    contexts.save(_make_context(age=72))

    result = engine.validate("rx-001")

    assert len(result.issues) == 1
    assert "1600mg" in result.issues[0].description
    assert "65 and over" in result.issues[0].description


def test_dose_within_limits_passes(engine, fake_registry, contexts, make_request):
    fake_registry.add(make_request(
        "rx-001", medication="Paracetamol 500mg tablets", dosage="two tablets four times daily",
        dose={"value": 2, "unit": "tablet"},
    ))
    contexts.save(_make_context())

    assert engine.validate("rx-001").is_valid


def test_issues_follow_check_order(engine, fake_registry, contexts, make_request):
    fake_registry.add(make_request(
        "rx-001", medication="Ibuprofen 800mg tablets", dosage="one tablet four times daily",
    ))
    contexts.save(_make_context(
        current_medications=["Warfarin 3mg tablets"],
        allergies=["NSAIDs"],
        conditions=["Peptic ulcer"],
    ))

    result = engine.validate("rx-001")

    assert [i.type for i in result.issues] == [
        IssueType.DRUG_INTERACTION,
        IssueType.INAPPROPRIATE_DOSAGE,
        IssueType.ALLERGY,
        IssueType.CONTRAINDICATION,
    ]
    assert result.severity is Severity.CRITICAL


def test_missing_profile_degrades_but_completes(engine, fake_registry, make_request):
    """Checks needing the patient context fail open; dosage still runs."""
    fake_registry.add(make_request(
        "rx-001", medication="Paracetamol 500mg tablets", dosage="three tablets four times daily",
        dose={"value": 3, "unit": "tablet"},
    ))

    result = engine.validate("rx-001")

    assert result.degraded
    assert result.incomplete_checks == ("drug_interaction", "allergy", "contraindication")
    assert [i.type for i in result.issues] == [IssueType.INAPPROPRIATE_DOSAGE]


def test_unavailable_knowledge_source_fails_open(registry, contexts, fake_registry, make_request):
    class _NoInteractionData(StaticKnowledgeBase):
        def interactions_for(self, medication):
            raise ValidationDependencyError("interaction service down")

    fake_registry.add(make_request("rx-001", medication="Warfarin 5mg tablets"))
    contexts.save(_make_context(current_medications=["Aspirin 75mg tablets"]))
    engine = ValidationEngine(registry, contexts, _NoInteractionData())

    result = engine.validate("rx-001")

    assert result.is_valid
    assert result.incomplete_checks == ("drug_interaction",)


def test_registry_errors_propagate(engine):
    with pytest.raises(RegistryError):
        engine.validate("rx-missing")


def test_validation_is_audited(engine, fake_registry, contexts, make_request, session_factory):
    fake_registry.add(make_request("rx-001"))
    contexts.save(_make_context())

    result = engine.validate("rx-001")

    with session_factory() as db:
        row = db.query(AuditLog).filter_by(action="PRESCRIPTION_VALIDATION").one()
    assert row.prescription_id == "rx-001"
    assert row.detail["resultId"] == result.id
    assert row.patient_id.endswith(PATIENT_ID[-4:])
    assert not row.patient_id.startswith(PATIENT_ID[:4])


def test_strength_parsed_from_medication_name():
    assert single_dose_mg("Metformin 500mg tablets", None) == 500
    assert single_dose_mg("Amoxicillin 1g sachets", None) == 1000
    assert single_dose_mg("Gaviscon liquid", None) is None


def test_names_match_on_whole_words():
    assert mentions("Aspirin 75mg dispersible tablets", "aspirin")
    assert not mentions("Co-amoxiclav 625mg tablets", "amoxiclav")
