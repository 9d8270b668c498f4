"""
Persisted entities owned by the integration core.

Prescriptions themselves live in the registry and are never stored here.
What is stored:
- the patient's clinical context used by the rule checks (PHI encrypted)
- the last-known adherence snapshot and its per-medication rows
- adherence interventions and refill reminders already sent
- the audit trail
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from rxcore.models.database import Base


def _uuid() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Patient clinical context (contains PHI)
# ---------------------------------------------------------------------------
class PatientProfile(Base):
    __tablename__ = "patient_profiles"

    patient_id = Column(String(64), primary_key=True, comment="Registry subject id / NHS number")
    pharmacy_code = Column(String(16), index=True, comment="ODS code of the nominated pharmacy")
    encrypted_name = Column(Text, comment="Fernet-encrypted full name")
    gender = Column(String(16))
    age = Column(Integer)
    weight_kg = Column(Float)
    allergies = Column(JSON, default=list, nullable=False)
    current_medications = Column(JSON, default=list, nullable=False)
    conditions = Column(JSON, default=list, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)


# ---------------------------------------------------------------------------
# Adherence snapshot, replaced wholesale on every calculation
# ---------------------------------------------------------------------------
class PatientAdherence(Base):
    __tablename__ = "patient_adherence"

    patient_id = Column(String(64), primary_key=True)
    score = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False)
    trend = Column(String(16), nullable=False)
    last_calculated = Column(DateTime(timezone=True), nullable=False)

    medications = relationship(
        "MedicationAdherence",
        back_populates="snapshot",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="MedicationAdherence.medication_name",
    )


class MedicationAdherence(Base):
    __tablename__ = "medication_adherence"

    id = Column(String(32), primary_key=True, default=_uuid)
    patient_id = Column(String(64), ForeignKey("patient_adherence.patient_id"), nullable=False)
    medication_name = Column(String(256), nullable=False)
    score = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False)
    last_filled = Column(Date)
    next_due = Column(Date, index=True)
    days_supply = Column(Integer, default=0, nullable=False)

    snapshot = relationship("PatientAdherence", back_populates="medications")

    __table_args__ = (
        UniqueConstraint("patient_id", "medication_name", name="uq_patient_medication"),
    )


class AdherenceIntervention(Base):
    __tablename__ = "adherence_interventions"

    id = Column(String(32), primary_key=True, default=_uuid)
    patient_id = Column(String(64), nullable=False, index=True)
    type = Column(String(64), nullable=False)
    notes = Column(Text)
    user_id = Column(String(128), nullable=False)
    date = Column(DateTime(timezone=True), default=_now, nullable=False)


class ReminderLog(Base):
    __tablename__ = "reminder_log"

    id = Column(String(32), primary_key=True, default=_uuid)
    patient_id = Column(String(64), nullable=False, index=True)
    medications = Column(JSON, default=list, nullable=False)
    sent_at = Column(DateTime(timezone=True), default=_now, nullable=False)


# ---------------------------------------------------------------------------
# Audit Log – immutable compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(String(32), primary_key=True, default=_uuid)
    action = Column(String(64), nullable=False)
    category = Column(String(32), nullable=False)
    user_id = Column(String(128))
    patient_id = Column(String(64))
    nhs_number = Column(String(32), comment="Masked: only the last 4 digits are visible")
    prescription_id = Column(String(64))
    detail = Column(JSON, comment="Redacted context for the action")
    timestamp = Column(DateTime(timezone=True), default=_now, nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)
