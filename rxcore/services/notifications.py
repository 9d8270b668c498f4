"""
Events handed to the notification collaborator.

The core only decides *that* something should be communicated; rendering
and delivery (SMS, email, in-app) belong to the collaborator. Each event
carries the identifiers and medication names the collaborator needs to
build its own message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Protocol

from rxcore.services.audit import mask_nhs_number

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CriticalValidationIssues:
    patient_id: str | None
    prescription_id: str
    medications: tuple[str, ...]
    descriptions: tuple[str, ...]
    result_id: str
    kind: str = "validation.critical"
    created_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class AdherenceReminderDue:
    patient_id: str
    medications: tuple[str, ...]
    due_dates: tuple[date, ...]
    kind: str = "adherence.reminder_due"
    created_at: datetime = field(default_factory=_now)


class Notifier(Protocol):
    def publish(self, event) -> None: ...


class LoggingNotifier:
    """Default collaborator: records events in the application log."""

    def publish(self, event) -> None:
        logger.info(
            "NOTIFY %s patient=%s medications=%s",
            event.kind,
            mask_nhs_number(event.patient_id),
            ", ".join(event.medications),
        )
