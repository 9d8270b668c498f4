"""
Audit logging service for compliance tracking.

Every event is written as one row of the ``audit_log`` table. Before it is
stored, NHS numbers are masked down to their last four digits and the
detail payload is redacted recursively, so neither secrets nor demographics
reach the trail. A failed audit write is logged and dropped: losing an
audit row must never break a dispensing workflow.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rxcore.models.pharmacy import AuditLog

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Keys are compared after lower-casing and stripping "_" and "-".
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "token",
        "accesstoken",
        "secret",
        "clientsecret",
        "key",
        "apikey",
        "authorization",
        "auth",
        "creditcard",
        "card",
        "cvv",
        "pin",
        "ssn",
        "socialsecurity",
        "dob",
        "dateofbirth",
        "birthdate",
        "address",
        "postcode",
        "zipcode",
        "phone",
        "phonenumber",
        "email",
        "name",
        "patientname",
    }
)


class AuditCategory(str, Enum):
    REGISTRY_API = "REGISTRY_API"
    PRESCRIPTION = "PRESCRIPTION"
    PATIENT = "PATIENT"
    AUTHENTICATION = "AUTHENTICATION"
    SYSTEM = "SYSTEM"


def mask_nhs_number(value: str | None) -> str | None:
    """Replace every digit except the last four with ``*``."""
    if not value or len(value) < 4:
        return value
    return re.sub(r"\d", "*", value[:-4]) + value[-4:]


def redact(detail: Any) -> Any:
    """Return a copy of ``detail`` with sensitive keys replaced, at any depth."""
    if isinstance(detail, dict):
        clean = {}
        for key, value in detail.items():
            normalised = re.sub(r"[_\-]", "", str(key)).lower()
            clean[key] = REDACTED if normalised in SENSITIVE_FIELDS else redact(value)
        return clean
    if isinstance(detail, (list, tuple)):
        return [redact(item) for item in detail]
    return detail


def category_for(action: str) -> AuditCategory:
    if action.startswith("GET_") or action.startswith("SEARCH_"):
        return AuditCategory.REGISTRY_API
    if "PRESCRIPTION" in action or action.startswith("AI_"):
        return AuditCategory.PRESCRIPTION
    if "PATIENT" in action or "ADHERENCE" in action:
        return AuditCategory.PATIENT
    if action == "AUTHENTICATION":
        return AuditCategory.AUTHENTICATION
    return AuditCategory.SYSTEM


class AuditService:
    """Writes audit rows through a session factory (``sessionmaker``)."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def log_action(
        self,
        action: str,
        *,
        category: AuditCategory | None = None,
        user_id: str | None = None,
        patient_id: str | None = None,
        nhs_number: str | None = None,
        prescription_id: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> AuditLog | None:
        """Write an immutable audit log entry. Returns None if the write failed."""
        entry = AuditLog(
            action=action,
            category=(category or category_for(action)).value,
            user_id=user_id or "SYSTEM",
            patient_id=mask_nhs_number(patient_id),
            nhs_number=mask_nhs_number(nhs_number),
            prescription_id=prescription_id,
            detail=redact(detail) if detail else None,
        )
        try:
            with self._session_factory() as db:
                db.add(entry)
                db.commit()
                db.refresh(entry)
                db.expunge(entry)
        except SQLAlchemyError as exc:
            logger.error("Failed to write audit entry %s: %s", action, exc)
            return None
        logger.info(
            "AUDIT: %s %s prescription=%s nhs=%s",
            entry.category,
            action,
            prescription_id or "-",
            entry.nhs_number or "-",
        )
        return entry

    def log_prescription_action(
        self, action: str, prescription_id: str, detail: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> AuditLog | None:
        return self.log_action(
            action,
            category=AuditCategory.PRESCRIPTION,
            prescription_id=prescription_id,
            user_id=user_id,
            detail=detail,
        )

    def log_patient_action(
        self, action: str, patient_id: str, detail: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> AuditLog | None:
        return self.log_action(
            action,
            category=AuditCategory.PATIENT,
            patient_id=patient_id,
            user_id=user_id,
            detail=detail,
        )

    def log_system_event(self, action: str, detail: dict[str, Any] | None = None) -> AuditLog | None:
        return self.log_action(action, category=AuditCategory.SYSTEM, detail=detail)
