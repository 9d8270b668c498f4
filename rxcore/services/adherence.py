"""
Medication adherence from the patient's prescription history.

A refill is "on time" when it is issued no more than 3 days after the
previous fill should have run out, "late" at 4-14 days and "very late"
beyond that. Per medication:

    score = round((on_time * 100 + late * 50) / evaluated_gaps)

A medication with fewer than two fills, or no gap that could be evaluated
(days supply unknown), scores 100. The patient's score is the rounded mean
of their medication scores. Each calculation replaces the stored snapshot;
the trend compares against the snapshot it replaces.

Registry history is eventually consistent, so everything the registry
returns is filtered again here before it is scored.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from rxcore.models.pharmacy import (
    AdherenceIntervention,
    MedicationAdherence,
    PatientAdherence,
    PatientProfile,
    ReminderLog,
)
from rxcore.schemas.adherence import (
    AdherenceRecord,
    AdherenceStatus,
    InterventionCandidate,
    MedicationAdherenceEntry,
    Trend,
)
from rxcore.schemas.prescription import (
    Prescription,
    PrescriptionSearchParams,
    PrescriptionStatus,
)
from rxcore.services.audit import AuditService, mask_nhs_number
from rxcore.services.clinical_context import ClinicalContextRepository
from rxcore.services.days_supply import estimate_days_supply, round_half_up
from rxcore.services.notifications import AdherenceReminderDue, LoggingNotifier, Notifier
from rxcore.services.registry import RegistryClient

logger = logging.getLogger(__name__)

HISTORY_DAYS = 365
HISTORY_LIMIT = 50
ON_TIME_DAYS = 3
LATE_DAYS = 14
TREND_DELTA = 5
REMINDER_COOLDOWN = timedelta(days=2)
INTERVENTION_COOLDOWN = timedelta(days=14)

_COUNTED_STATUSES = (PrescriptionStatus.ACTIVE, PrescriptionStatus.COMPLETED)


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_late(previous: Prescription, current: Prescription) -> int | None:
    """
    Whole days between the day ``previous`` ran out and the day ``current``
    was issued (negative when early). None when the supply is unknown.
    """
    supply = estimate_days_supply(previous.dispense_quantity, previous.dosage)
    if supply <= 0:
        return None
    expected = previous.authored_on + timedelta(days=supply)
    return math.floor((current.authored_on - expected).total_seconds() / 86400)


def score_fills(fills: list[Prescription]) -> int:
    """Score one medication's fills, given newest first."""
    on_time = late = evaluated = 0
    for current, previous in zip(fills, fills[1:]):
        gap = days_late(previous, current)
        if gap is None:
            continue
        evaluated += 1
        if gap <= ON_TIME_DAYS:
            on_time += 1
        elif gap <= LATE_DAYS:
            late += 1
    if evaluated == 0:
        return 100
    return round_half_up((on_time * 100 + late * 50) / evaluated)


def trend_between(previous: int | None, current: int) -> Trend:
    if previous is None:
        return Trend.UNKNOWN
    if current - previous >= TREND_DELTA:
        return Trend.IMPROVING
    if current - previous <= -TREND_DELTA:
        return Trend.DECLINING
    return Trend.STABLE


class AdherenceCalculator:
    def __init__(
        self,
        registry: RegistryClient,
        session_factory: Callable[[], Session],
        notifier: Notifier | None = None,
        audit: AuditService | None = None,
        contexts: ClinicalContextRepository | None = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.registry = registry
        self._session_factory = session_factory
        self.notifier = notifier or LoggingNotifier()
        self.audit = audit
        self.contexts = contexts
        self._clock = clock

    # ── Calculation ──────────────────────────────────────────────────────────

    def calculate(self, patient_id: str) -> AdherenceRecord:
        now = self._clock()
        history = self._history(patient_id, now)

        groups: dict[str, list[Prescription]] = defaultdict(list)
        for prescription in history:
            for name in prescription.medication_names:
                groups[name].append(prescription)

        entries = []
        for name in sorted(groups):
            fills = sorted(groups[name], key=lambda p: p.authored_on, reverse=True)
            entries.append(self._entry(name, fills))

        if entries:
            score = round_half_up(sum(e.score for e in entries) / len(entries))
            status = AdherenceStatus.from_score(score)
        else:
            score, status = 0, AdherenceStatus.UNKNOWN

        today = now.date()
        due_dates = [e.next_due for e in entries if e.next_due]
        filled = [e.last_filled for e in entries if e.last_filled]
        next_due = min(due_dates) if due_dates else None

        with self._session_factory() as db:
            snapshot = db.get(PatientAdherence, patient_id)
            trend = trend_between(snapshot.score if snapshot else None, score)
            if snapshot is None:
                snapshot = PatientAdherence(patient_id=patient_id)
                db.add(snapshot)
            snapshot.score = score
            snapshot.status = status.value
            snapshot.trend = trend.value
            snapshot.last_calculated = now
            self._store_medications(snapshot, entries)
            db.commit()

        record = AdherenceRecord(
            patient_id=patient_id,
            score=score,
            status=status,
            trend=trend,
            last_calculated=now,
            medications=entries,
            last_refill_date=max(filled) if filled else None,
            next_refill_due=next_due,
            days_late=max(0, (today - next_due).days) if next_due else None,
        )
        logger.info(
            "Adherence for %s: score=%d status=%s trend=%s medications=%d",
            mask_nhs_number(patient_id),
            score,
            status.value,
            trend.value,
            len(entries),
        )
        if self.audit is not None:
            self.audit.log_patient_action(
                "CALCULATE_ADHERENCE",
                patient_id,
                detail={
                    "score": score,
                    "status": status.value,
                    "trend": trend.value,
                    "medicationCount": len(entries),
                },
            )
        return record

    # ── Reminders and interventions ─────────────────────────────────────────

    def process_reminders(self, days_before: int = 7) -> int:
        """Publish one reminder per patient with a refill due within ``days_before`` days."""
        now = self._clock()
        today = now.date()
        horizon = today + timedelta(days=days_before)
        sent = 0

        with self._session_factory() as db:
            rows = (
                db.query(MedicationAdherence)
                .filter(MedicationAdherence.next_due >= today, MedicationAdherence.next_due <= horizon)
                .order_by(MedicationAdherence.patient_id, MedicationAdherence.next_due)
                .all()
            )
            due: dict[str, list[MedicationAdherence]] = defaultdict(list)
            for row in rows:
                due[row.patient_id].append(row)

            for patient_id, medications in due.items():
                last = (
                    db.query(ReminderLog.sent_at)
                    .filter(ReminderLog.patient_id == patient_id)
                    .order_by(ReminderLog.sent_at.desc())
                    .first()
                )
                if last is not None and now - _utc(last[0]) < REMINDER_COOLDOWN:
                    logger.debug("Reminder for %s sent recently; skipping", mask_nhs_number(patient_id))
                    continue
                names = tuple(m.medication_name for m in medications)
                self.notifier.publish(
                    AdherenceReminderDue(
                        patient_id=patient_id,
                        medications=names,
                        due_dates=tuple(m.next_due for m in medications),
                    )
                )
                db.add(ReminderLog(patient_id=patient_id, medications=list(names), sent_at=now))
                sent += 1
            db.commit()

        logger.info("Published %d adherence reminder(s)", sent)
        return sent

    def record_intervention(
        self, patient_id: str, type: str, notes: str | None, user_id: str
    ) -> AdherenceIntervention:
        intervention = AdherenceIntervention(
            patient_id=patient_id,
            type=type,
            notes=notes,
            user_id=user_id,
            date=self._clock(),
        )
        with self._session_factory() as db:
            db.add(intervention)
            db.commit()
            db.refresh(intervention)
            db.expunge(intervention)
        if self.audit is not None:
            self.audit.log_patient_action(
                "ADHERENCE_INTERVENTION",
                patient_id,
                user_id=user_id,
                detail={"type": type, "interventionId": intervention.id},
            )
        return intervention

    def patients_needing_intervention(self, pharmacy_code: str) -> list[InterventionCandidate]:
        """
        Patients of ``pharmacy_code`` whose adherence is poor, or fair and
        declining, and who have had no intervention in the last 14 days.
        Lowest score first.
        """
        now = self._clock()
        with self._session_factory() as db:
            snapshots = (
                db.query(PatientAdherence)
                .join(PatientProfile, PatientProfile.patient_id == PatientAdherence.patient_id)
                .filter(PatientProfile.pharmacy_code == pharmacy_code)
                .filter(
                    or_(
                        PatientAdherence.status == AdherenceStatus.POOR.value,
                        and_(
                            PatientAdherence.status == AdherenceStatus.FAIR.value,
                            PatientAdherence.trend == Trend.DECLINING.value,
                        ),
                    )
                )
                .order_by(PatientAdherence.score)
                .all()
            )
            candidates = []
            for snapshot in snapshots:
                last = (
                    db.query(AdherenceIntervention.date)
                    .filter(AdherenceIntervention.patient_id == snapshot.patient_id)
                    .order_by(AdherenceIntervention.date.desc())
                    .first()
                )
                last_date = _utc(last[0]) if last else None
                if last_date is not None and now - last_date < INTERVENTION_COOLDOWN:
                    continue
                candidates.append(
                    InterventionCandidate(
                        patient_id=snapshot.patient_id,
                        score=snapshot.score,
                        status=AdherenceStatus(snapshot.status),
                        trend=Trend(snapshot.trend),
                        medications=[
                            MedicationAdherenceEntry(
                                name=m.medication_name,
                                score=m.score,
                                status=AdherenceStatus(m.status),
                                last_filled=m.last_filled,
                                next_due=m.next_due,
                                days_supply=m.days_supply,
                            )
                            for m in snapshot.medications
                        ],
                        last_intervention=last_date,
                    )
                )

        if self.contexts is not None and candidates:
            names = self.contexts.names_for([c.patient_id for c in candidates])
            for candidate in candidates:
                candidate.patient_name = names.get(candidate.patient_id)
        return candidates

    # ── Internals ────────────────────────────────────────────────────────────

    def _history(self, patient_id: str, now: datetime) -> list[Prescription]:
        cutoff = now - timedelta(days=HISTORY_DAYS)
        filters = PrescriptionSearchParams(
            status=list(_COUNTED_STATUSES),
            date_from=cutoff.date(),
            count=HISTORY_LIMIT,
            sort="-authored-on",
        )
        bundle = self.registry.list_for_patient(patient_id, filters)
        kept = [
            p
            for p in bundle.prescriptions
            if p.status in _COUNTED_STATUSES
            and p.authored_on is not None
            and p.authored_on >= cutoff
            and p.patient_id == patient_id
        ]
        kept.sort(key=lambda p: p.authored_on, reverse=True)
        return kept[:HISTORY_LIMIT]

    @staticmethod
    def _entry(name: str, fills: list[Prescription]) -> MedicationAdherenceEntry:
        score = score_fills(fills)
        latest = fills[0]
        supply = estimate_days_supply(latest.dispense_quantity, latest.dosage)
        last_filled = latest.issued_on
        return MedicationAdherenceEntry(
            name=name,
            score=score,
            status=AdherenceStatus.from_score(score),
            last_filled=last_filled,
            next_due=last_filled + timedelta(days=supply) if supply > 0 else None,
            days_supply=supply,
            fills=len(fills),
        )

    @staticmethod
    def _store_medications(
        snapshot: PatientAdherence, entries: list[MedicationAdherenceEntry]
    ) -> None:
        existing = {row.medication_name: row for row in snapshot.medications}
        current = {e.name for e in entries}
        for name, row in existing.items():
            if name not in current:
                snapshot.medications.remove(row)
        for entry in entries:
            row = existing.get(entry.name)
            if row is None:
                row = MedicationAdherence(medication_name=entry.name)
                snapshot.medications.append(row)
            row.score = entry.score
            row.status = entry.status.value
            row.last_filled = entry.last_filled
            row.next_due = entry.next_due
            row.days_supply = entry.days_supply
