"""
Patient clinical context read by the validation checks.

The context (allergies, current medications, conditions, age, weight) is
kept in ``patient_profiles``. A profile that is missing or cannot be read
is a dependency gap: callers get ValidationDependencyError and the checks
that need it fail open.
"""

from __future__ import annotations

import logging
from typing import Callable

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rxcore.exceptions import ValidationDependencyError
from rxcore.models.pharmacy import PatientProfile
from rxcore.services.audit import mask_nhs_number
from rxcore.services.encryption import EncryptionService

logger = logging.getLogger(__name__)


class PatientContext(BaseModel):
    patient_id: str
    pharmacy_code: str | None = None
    name: str | None = None
    gender: str | None = None
    age: int | None = None
    weight_kg: float | None = None
    allergies: list[str] = Field(default_factory=list)
    current_medications: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)


class ClinicalContextRepository:
    def __init__(self, session_factory: Callable[[], Session], encryption: EncryptionService):
        self._session_factory = session_factory
        self._encryption = encryption

    def get(self, patient_id: str) -> PatientContext:
        try:
            with self._session_factory() as db:
                profile = db.get(PatientProfile, patient_id)
        except SQLAlchemyError as exc:
            logger.error(
                "Clinical context for %s unavailable: %s", mask_nhs_number(patient_id), exc
            )
            raise ValidationDependencyError(f"Clinical context store unavailable: {exc}") from exc
        if profile is None:
            raise ValidationDependencyError(
                f"No clinical profile for patient {mask_nhs_number(patient_id)}"
            )
        return PatientContext(
            patient_id=profile.patient_id,
            pharmacy_code=profile.pharmacy_code,
            name=self._encryption.try_decrypt(profile.encrypted_name),
            gender=profile.gender,
            age=profile.age,
            weight_kg=profile.weight_kg,
            allergies=list(profile.allergies or []),
            current_medications=list(profile.current_medications or []),
            conditions=list(profile.conditions or []),
        )

    def save(self, context: PatientContext) -> None:
        """Insert or replace a patient's profile."""
        with self._session_factory() as db:
            profile = db.get(PatientProfile, context.patient_id) or PatientProfile(
                patient_id=context.patient_id
            )
            profile.pharmacy_code = context.pharmacy_code
            profile.encrypted_name = self._encryption.encrypt(context.name)
            profile.gender = context.gender
            profile.age = context.age
            profile.weight_kg = context.weight_kg
            profile.allergies = list(context.allergies)
            profile.current_medications = list(context.current_medications)
            profile.conditions = list(context.conditions)
            db.add(profile)
            db.commit()

    def names_for(self, patient_ids: list[str]) -> dict[str, str | None]:
        """Decrypted names keyed by patient id; unknown patients are omitted."""
        if not patient_ids:
            return {}
        with self._session_factory() as db:
            rows = (
                db.query(PatientProfile.patient_id, PatientProfile.encrypted_name)
                .filter(PatientProfile.patient_id.in_(patient_ids))
                .all()
            )
        return {pid: self._encryption.try_decrypt(name) for pid, name in rows}
