"""
FastAPI routes – a thin HTTP surface over the integration core.

Every route delegates to a component from the service container
(``get_services``) and translates domain errors into HTTP responses:

- registry 404 → 404
- any other RegistryError → 502
- AuthenticationError → 503
- StatusTransitionError → 409
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rxcore.exceptions import AuthenticationError, RegistryError, StatusTransitionError
from rxcore.models.database import get_db
from rxcore.schemas.adherence import AdherenceRecord, InterventionCandidate
from rxcore.schemas.api import (
    CancelRequest,
    FeedbackRequest,
    FeedbackResponse,
    HealthResponse,
    InterventionRequest,
    InterventionResponse,
    PrescriptionListResponse,
    PrescriptionSummary,
    ReminderRunResponse,
)
from rxcore.schemas.prescription import (
    PrescriptionSearchParams,
    PrescriptionStatus,
    StatusReason,
)
from rxcore.schemas.validation import ValidationResult
from rxcore.services.container import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


@contextmanager
def registry_errors():
    """Translate registry and credential failures into HTTP errors."""
    try:
        yield
    except StatusTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except AuthenticationError as exc:
        raise HTTPException(status_code=503, detail="Prescription registry unavailable") from exc
    except RegistryError as exc:
        if exc.not_found:
            raise HTTPException(status_code=404, detail="Prescription not found") from exc
        logger.error("Registry call %s failed after %d attempt(s): %s", exc.context, exc.attempts, exc)
        raise HTTPException(status_code=502, detail="Prescription registry error") from exc


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db), services: Services = Depends(get_services)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=services.settings.ENVIRONMENT,
        database=db_status,
        ai_model="configured" if services.validation.model is not None else "disabled",
    )


# ---------------------------------------------------------------------------
# Prescriptions
# ---------------------------------------------------------------------------

@router.get("/prescriptions/{prescription_id}", response_model=PrescriptionSummary)
def get_prescription(prescription_id: str, services: Services = Depends(get_services)):
    with registry_errors():
        prescription = services.registry.get_prescription(prescription_id)
    return PrescriptionSummary.from_prescription(prescription)


@router.get("/pharmacies/{ods_code}/prescriptions", response_model=PrescriptionListResponse)
def list_pharmacy_prescriptions(
    ods_code: str,
    status: list[PrescriptionStatus] | None = Query(None),
    date_from: date | None = None,
    date_to: date | None = None,
    count: int | None = Query(None, ge=1, le=100),
    services: Services = Depends(get_services),
):
    """Prescriptions nominated to a pharmacy, optionally filtered."""
    filters = PrescriptionSearchParams(
        status=status, date_from=date_from, date_to=date_to, count=count
    )
    with registry_errors():
        bundle = services.registry.list_for_pharmacy(ods_code, filters)
    return PrescriptionListResponse(
        total=bundle.total,
        skipped=bundle.skipped,
        prescriptions=[PrescriptionSummary.from_prescription(p) for p in bundle.prescriptions],
    )


@router.post("/prescriptions/{prescription_id}/cancel", response_model=PrescriptionSummary)
def cancel_prescription(
    prescription_id: str, request: CancelRequest, services: Services = Depends(get_services)
):
    reason = StatusReason(code=request.code, display=request.reason)
    with registry_errors():
        prescription = services.registry.cancel(prescription_id, reason)
    return PrescriptionSummary.from_prescription(prescription)


@router.post("/prescriptions/{prescription_id}/complete", response_model=PrescriptionSummary)
def complete_prescription(prescription_id: str, services: Services = Depends(get_services)):
    """Mark a prescription as dispensed."""
    with registry_errors():
        prescription = services.registry.complete(prescription_id)
    return PrescriptionSummary.from_prescription(prescription)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@router.post("/prescriptions/{prescription_id}/validate", response_model=ValidationResult)
def validate_prescription(prescription_id: str, services: Services = Depends(get_services)):
    """
    Run the clinical checks (and the remote model, when configured).
    A degraded result means some checks could not reach their data.
    """
    with registry_errors():
        return services.validation.validate(prescription_id)


@router.post("/validations/{result_id}/feedback", response_model=FeedbackResponse, status_code=202)
def validation_feedback(
    result_id: str, request: FeedbackRequest, services: Services = Depends(get_services)
):
    future = services.validation.report_override(
        result_id, request.issue_id, request.is_positive, user_id=request.user_id
    )
    return FeedbackResponse(queued=future is not None)


# ---------------------------------------------------------------------------
# Adherence
# ---------------------------------------------------------------------------

@router.post("/patients/{patient_id}/adherence", response_model=AdherenceRecord)
def calculate_adherence(patient_id: str, services: Services = Depends(get_services)):
    with registry_errors():
        return services.adherence.calculate(patient_id)


@router.post(
    "/patients/{patient_id}/interventions", response_model=InterventionResponse, status_code=201
)
def record_intervention(
    patient_id: str, request: InterventionRequest, services: Services = Depends(get_services)
):
    intervention = services.adherence.record_intervention(
        patient_id, request.type, request.notes, request.user_id
    )
    return InterventionResponse(
        id=intervention.id,
        patient_id=intervention.patient_id,
        type=intervention.type,
        user_id=intervention.user_id,
        date=intervention.date,
    )


@router.post("/adherence/reminders", response_model=ReminderRunResponse)
def run_adherence_reminders(services: Services = Depends(get_services)):
    """Publish refill reminders for medications due within the configured window."""
    days_before = services.settings.ADHERENCE_REMINDER_DAYS
    sent = services.adherence.process_reminders(days_before)
    return ReminderRunResponse(days_before=days_before, sent=sent)


@router.get("/pharmacies/{ods_code}/interventions", response_model=list[InterventionCandidate])
def patients_needing_intervention(ods_code: str, services: Services = Depends(get_services)):
    """Patients of a pharmacy whose adherence needs a pharmacist's attention."""
    return services.adherence.patients_needing_intervention(ods_code)
