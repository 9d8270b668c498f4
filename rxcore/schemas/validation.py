"""Validation issue and result models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def highest(cls, severities) -> Severity:
        """Dominant severity of an iterable; ``none`` when it is empty."""
        return max(severities, key=lambda s: s.rank, default=cls.NONE)


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.NONE: 0,
}


class IssueType(str, Enum):
    DRUG_INTERACTION = "drug_interaction"
    INAPPROPRIATE_DOSAGE = "inappropriate_dosage"
    ALLERGY = "allergy"
    CONTRAINDICATION = "contraindication"


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    type: IssueType
    severity: Severity
    description: str
    medications: tuple[str, ...] = ()
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    ai_generated: bool = False


class ValidationResult(BaseModel):
    """
    Outcome of one validation run.

    ``degraded`` is set when at least one check could not reach its data and
    was treated as "no issue found"; ``incomplete_checks`` names them.
    ``is_valid`` only reflects the issues that were found.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    prescription_id: str
    patient_id: str | None = None
    issues: tuple[ValidationIssue, ...] = ()
    severity: Severity = Severity.NONE
    is_valid: bool = True
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    ai_enhanced: bool = False
    degraded: bool = False
    incomplete_checks: tuple[str, ...] = ()

    @classmethod
    def from_issues(
        cls,
        prescription_id: str,
        issues,
        *,
        patient_id: str | None = None,
        incomplete_checks=(),
        ai_enhanced: bool = False,
    ) -> ValidationResult:
        issues = tuple(issues)
        incomplete = tuple(incomplete_checks)
        return cls(
            prescription_id=prescription_id,
            patient_id=patient_id,
            issues=issues,
            severity=Severity.highest(i.severity for i in issues),
            is_valid=not issues,
            ai_enhanced=ai_enhanced,
            degraded=bool(incomplete),
            incomplete_checks=incomplete,
        )

    def with_additional_issues(self, extra) -> ValidationResult:
        """Union with issues from an independent source; nothing is deduplicated."""
        combined = self.issues + tuple(extra)
        return self.model_copy(
            update={
                "issues": combined,
                "severity": Severity.highest(i.severity for i in combined),
                "is_valid": not combined,
                "ai_enhanced": True,
            }
        )

    @property
    def has_critical(self) -> bool:
        return self.severity is Severity.CRITICAL
