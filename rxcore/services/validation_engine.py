"""
Clinical validation of a prescription before it may be dispensed.

Four independent checks run concurrently over every medication on the
prescription:

1. drug interaction with the patient's current medications
2. dosage (single-dose and daily-dose limits)
3. allergy (always critical)
4. contraindication with recorded conditions

Issues are concatenated in that order once all checks have finished. A
check whose data source raises ValidationDependencyError contributes no
issues; it is named in ``incomplete_checks`` and the result is marked
``degraded``. Registry and authentication errors raised while loading the
prescription propagate.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from rxcore.exceptions import ValidationDependencyError
from rxcore.schemas.prescription import DosageInstruction, Prescription
from rxcore.schemas.validation import IssueType, Severity, ValidationIssue, ValidationResult
from rxcore.services.audit import AuditService
from rxcore.services.clinical_context import ClinicalContextRepository, PatientContext
from rxcore.services.days_supply import doses_per_day
from rxcore.services.knowledge import ClinicalKnowledgeBase, StaticKnowledgeBase, mentions
from rxcore.services.notifications import CriticalValidationIssues, Notifier
from rxcore.services.registry import RegistryClient

logger = logging.getLogger(__name__)

ELDERLY_AGE = 65

_TO_MG = {"mg": 1.0, "g": 1000.0, "mcg": 0.001, "microgram": 0.001, "micrograms": 0.001}
_STRENGTH = re.compile(r"(\d+(?:\.\d+)?)\s*(mg|g|mcg|micrograms?)\b", re.IGNORECASE)


@dataclass
class ValidationInputs:
    prescription: Prescription
    context: PatientContext | None = None
    context_error: str | None = None


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}".rstrip("0")


def _require_context(inputs: ValidationInputs) -> PatientContext:
    if inputs.context is None:
        raise ValidationDependencyError(inputs.context_error or "Patient context unavailable")
    return inputs.context


def single_dose_mg(medication: str, dosage: DosageInstruction | None) -> float | None:
    """
    Milligrams taken per administration, or None when it cannot be worked out.

    A dose given in a mass unit is used directly. A dose in units (tablets,
    capsules) is multiplied by the strength in the medication name, e.g.
    "Paracetamol 500mg tablets" with a dose of 2 gives 1000.
    """
    dose = dosage.dose if dosage else None
    if dose is not None and dose.value is not None:
        unit = (dose.unit or dose.code or "").lower()
        if unit in _TO_MG:
            return dose.value * _TO_MG[unit]
    match = _STRENGTH.search(medication)
    if match is None:
        return None
    strength = float(match.group(1)) * _TO_MG[match.group(2).lower()]
    count = dose.value if dose is not None and dose.value is not None else 1
    return strength * count


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def check_interactions(
    inputs: ValidationInputs, knowledge: ClinicalKnowledgeBase
) -> list[ValidationIssue]:
    context = _require_context(inputs)
    issues = []
    for medication in inputs.prescription.medication_names:
        hits = []
        for interaction in knowledge.interactions_for(medication):
            for current in context.current_medications:
                if mentions(current, interaction.interacts_with):
                    hits.append((interaction, current))
        if not hits:
            continue
        issues.append(
            ValidationIssue(
                type=IssueType.DRUG_INTERACTION,
                severity=Severity.highest(i.severity for i, _ in hits),
                description="; ".join(i.description for i, _ in hits),
                medications=(medication, *dict.fromkeys(current for _, current in hits)),
            )
        )
    return issues


def check_dosage(
    inputs: ValidationInputs, knowledge: ClinicalKnowledgeBase
) -> list[ValidationIssue]:
    # Runs without a patient context; the elderly limit then does not apply.
    prescription = inputs.prescription
    dosage = prescription.dosage
    age = inputs.context.age if inputs.context else None
    issues = []
    for medication in prescription.medication_names:
        limit = knowledge.dose_limit_for(medication)
        if limit is None:
            continue
        single = single_dose_mg(medication, dosage)
        if single is None:
            continue
        daily = single * doses_per_day(dosage)
        daily_max = limit.max_daily_mg
        elderly = age is not None and age >= ELDERLY_AGE and limit.elderly_max_daily_mg
        if elderly:
            daily_max = limit.elderly_max_daily_mg

        if single > limit.max_single_mg:
            description = (
                f"Single dose of {_fmt(single)}mg of {medication} exceeds the "
                f"maximum of {_fmt(limit.max_single_mg)}mg"
            )
        elif daily > daily_max:
            description = (
                f"Daily dose of {_fmt(daily)}mg of {medication} exceeds the maximum of "
                f"{_fmt(daily_max)}mg{' for patients aged 65 and over' if elderly else ''}"
            )
        else:
            continue
        issues.append(
            ValidationIssue(
                type=IssueType.INAPPROPRIATE_DOSAGE,
                severity=limit.severity,
                description=description,
                medications=(medication,),
            )
        )
    return issues


def check_allergies(
    inputs: ValidationInputs, knowledge: ClinicalKnowledgeBase
) -> list[ValidationIssue]:
    context = _require_context(inputs)
    allergies = [a.strip().lower() for a in context.allergies if a and a.strip()]
    issues = []
    for medication in inputs.prescription.medication_names:
        for component in knowledge.allergen_components(medication):
            allergen = next((a for a in allergies if component in a), None)
            if allergen is None:
                continue
            issues.append(
                ValidationIssue(
                    type=IssueType.ALLERGY,
                    severity=Severity.CRITICAL,
                    description=(
                        f"Patient is allergic to {allergen}, which is a component of {medication}"
                    ),
                    medications=(medication,),
                )
            )
            break
    return issues


def check_contraindications(
    inputs: ValidationInputs, knowledge: ClinicalKnowledgeBase
) -> list[ValidationIssue]:
    context = _require_context(inputs)
    issues = []
    for medication in inputs.prescription.medication_names:
        for contraindication in knowledge.contraindications_for(medication):
            condition = next(
                (c for c in context.conditions if mentions(c, contraindication.condition)),
                None,
            )
            if condition is None:
                continue
            issues.append(
                ValidationIssue(
                    type=IssueType.CONTRAINDICATION,
                    severity=contraindication.severity,
                    description=f"{medication} is contraindicated in {condition}",
                    medications=(medication,),
                )
            )
    return issues


Check = Callable[[ValidationInputs, ClinicalKnowledgeBase], list[ValidationIssue]]

CHECKS: tuple[tuple[str, Check], ...] = (
    ("drug_interaction", check_interactions),
    ("dosage", check_dosage),
    ("allergy", check_allergies),
    ("contraindication", check_contraindications),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ValidationEngine:
    def __init__(
        self,
        registry: RegistryClient,
        contexts: ClinicalContextRepository,
        knowledge: ClinicalKnowledgeBase | None = None,
        audit: AuditService | None = None,
        notifier: Notifier | None = None,
        *,
        checks: tuple[tuple[str, Check], ...] = CHECKS,
        max_workers: int = 4,
    ):
        self.registry = registry
        self.contexts = contexts
        self.knowledge = knowledge or StaticKnowledgeBase()
        self.audit = audit
        self.notifier = notifier
        self.checks = checks
        self.max_workers = max_workers

    def validate(self, prescription_id: str) -> ValidationResult:
        inputs = self.load(prescription_id)
        result = self.run(inputs)
        self.report(result, inputs.prescription)
        return result

    def load(self, prescription_id: str) -> ValidationInputs:
        prescription = self.registry.get_prescription(prescription_id)
        inputs = ValidationInputs(prescription=prescription)
        if prescription.patient_id is None:
            inputs.context_error = "Prescription has no subject reference"
            return inputs
        try:
            inputs.context = self.contexts.get(prescription.patient_id)
        except ValidationDependencyError as exc:
            inputs.context_error = str(exc)
        return inputs

    def run(self, inputs: ValidationInputs) -> ValidationResult:
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [
                (name, pool.submit(self._run_check, name, check, inputs))
                for name, check in self.checks
            ]
        issues: list[ValidationIssue] = []
        incomplete: list[str] = []
        for name, future in futures:
            found = future.result()
            if found is None:
                incomplete.append(name)
            else:
                issues.extend(found)

        prescription = inputs.prescription
        result = ValidationResult.from_issues(
            prescription.id,
            issues,
            patient_id=prescription.patient_id,
            incomplete_checks=incomplete,
        )
        logger.info(
            "Validated prescription %s: severity=%s issues=%d degraded=%s",
            prescription.id,
            result.severity.value,
            len(result.issues),
            result.degraded,
        )
        return result

    def report(self, result: ValidationResult, prescription: Prescription) -> None:
        """Audit the run and raise a notification when it is critical."""
        if self.audit is not None:
            self.audit.log_action(
                "PRESCRIPTION_VALIDATION",
                patient_id=result.patient_id,
                prescription_id=result.prescription_id,
                detail={
                    "resultId": result.id,
                    "severity": result.severity.value,
                    "issueCount": len(result.issues),
                    "aiEnhanced": result.ai_enhanced,
                    "degraded": result.degraded,
                    "incompleteChecks": list(result.incomplete_checks),
                },
            )
        if result.has_critical and self.notifier is not None:
            critical = [i for i in result.issues if i.severity is Severity.CRITICAL]
            self.notifier.publish(
                CriticalValidationIssues(
                    patient_id=result.patient_id,
                    prescription_id=result.prescription_id,
                    medications=tuple(prescription.medication_names),
                    descriptions=tuple(i.description for i in critical),
                    result_id=result.id,
                )
            )

    def _run_check(
        self, name: str, check: Check, inputs: ValidationInputs
    ) -> list[ValidationIssue] | None:
        try:
            return check(inputs, self.knowledge)
        except ValidationDependencyError as exc:
            logger.warning(
                "Check %s skipped for prescription %s: %s", name, inputs.prescription.id, exc
            )
            return None
