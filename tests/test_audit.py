"""Tests for audit masking, redaction and persistence."""

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from rxcore.services.audit import (
    REDACTED,
    AuditCategory,
    AuditService,
    category_for,
    mask_nhs_number,
    redact,
)
from rxcore.services.notifications import AdherenceReminderDue, LoggingNotifier


def test_nhs_number_keeps_last_four_digits():
    assert mask_nhs_number("9434765919") == "******5919"
    assert mask_nhs_number("943 476 5919") == "*** *** 5919"
    assert mask_nhs_number("591") == "591"
    assert mask_nhs_number(None) is None


def test_sensitive_keys_are_redacted_at_any_depth():
    detail = {
        "requestId": "abc",
        "access_token": "secret-token",
        "patient": {
            "Date-Of-Birth": "1950-01-01",
            "postcode": "LS1 4AP",
            "contacts": [{"phone": "0113 000 0000", "relationship": "daughter"}],
        },
    }

    clean = redact(detail)

    assert clean["requestId"] == "abc"
    assert clean["access_token"] == REDACTED
    assert clean["patient"]["Date-Of-Birth"] == REDACTED
    assert clean["patient"]["postcode"] == REDACTED
    assert clean["patient"]["contacts"][0] == {"phone": REDACTED, "relationship": "daughter"}
    assert detail["access_token"] == "secret-token"  # input untouched


def test_category_from_action_name():
    assert category_for("GET_PRESCRIPTION") is AuditCategory.REGISTRY_API
    assert category_for("UPDATE_PRESCRIPTION") is AuditCategory.PRESCRIPTION
    assert category_for("AI_VALIDATION_ERROR") is AuditCategory.PRESCRIPTION
    assert category_for("CALCULATE_ADHERENCE") is AuditCategory.PATIENT
    assert category_for("API_ERROR") is AuditCategory.SYSTEM


def test_log_action_persists_masked_row(audit):
    entry = audit.log_action(
        "GET_PATIENT_PRESCRIPTIONS",
        nhs_number="9434765919",
        detail={"requestId": "r-1", "clientSecret": "s3cret"},
    )

    assert entry.id
    assert entry.category == "REGISTRY_API"
    assert entry.user_id == "SYSTEM"
    assert entry.nhs_number == "******5919"
    assert entry.detail == {"requestId": "r-1", "clientSecret": REDACTED}


def test_failed_write_is_logged_not_raised(caplog):
    """Without tables every write fails; the caller carries on."""
    engine = create_engine("sqlite://")
    service = AuditService(sessionmaker(bind=engine))

    with caplog.at_level(logging.ERROR):
        assert service.log_system_event("STARTUP") is None
    assert "Failed to write audit entry STARTUP" in caplog.text


def test_logging_notifier_masks_patient(caplog):
    event = AdherenceReminderDue(patient_id="9434765919", medications=("Metformin 500mg tablets",), due_dates=())

    with caplog.at_level(logging.INFO):
        LoggingNotifier().publish(event)

    assert "******5919" in caplog.text
    assert "9434765919" not in caplog.text
