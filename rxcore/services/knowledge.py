"""
Static clinical knowledge used by the rule checks.

In production each lookup would be backed by a drug database; the
``ClinicalKnowledgeBase`` protocol is that seam. Implementations signal an
unreachable source with ValidationDependencyError so the calling check can
fail open and mark the run as degraded.

Medication display names from the registry ("Warfarin 5mg tablets") are
matched to table keys on whole words, case-insensitively.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from rxcore.schemas.validation import Severity


@dataclass(frozen=True)
class Interaction:
    drug: str
    interacts_with: str
    severity: Severity
    description: str


@dataclass(frozen=True)
class DoseLimit:
    max_single_mg: float
    max_daily_mg: float
    severity: Severity = Severity.MEDIUM
    elderly_max_daily_mg: float | None = None


@dataclass(frozen=True)
class Contraindication:
    condition: str
    severity: Severity


INTERACTIONS: dict[str, list[Interaction]] = {
    "warfarin": [
        Interaction(
            "warfarin", "aspirin", Severity.HIGH,
            "Increased risk of bleeding when warfarin is combined with aspirin",
        ),
        Interaction(
            "warfarin", "ibuprofen", Severity.HIGH,
            "NSAIDs increase the anticoagulant effect and bleeding risk of warfarin",
        ),
        Interaction(
            "warfarin", "clarithromycin", Severity.HIGH,
            "Clarithromycin enhances the anticoagulant effect of warfarin",
        ),
    ],
    "fluoxetine": [
        Interaction(
            "fluoxetine", "tramadol", Severity.CRITICAL,
            "Risk of serotonin syndrome when fluoxetine is combined with tramadol",
        ),
    ],
    "sertraline": [
        Interaction(
            "sertraline", "tramadol", Severity.CRITICAL,
            "Risk of serotonin syndrome when sertraline is combined with tramadol",
        ),
    ],
    "simvastatin": [
        Interaction(
            "simvastatin", "clarithromycin", Severity.CRITICAL,
            "Clarithromycin raises simvastatin levels; risk of rhabdomyolysis",
        ),
        Interaction(
            "simvastatin", "amlodipine", Severity.LOW,
            "Amlodipine increases simvastatin exposure; limit simvastatin to 20mg daily",
        ),
    ],
    "sildenafil": [
        Interaction(
            "sildenafil", "isosorbide mononitrate", Severity.CRITICAL,
            "Nitrates with sildenafil can cause severe hypotension",
        ),
    ],
    "methotrexate": [
        Interaction(
            "methotrexate", "trimethoprim", Severity.HIGH,
            "Trimethoprim increases the risk of methotrexate toxicity",
        ),
    ],
}

DOSE_LIMITS: dict[str, DoseLimit] = {
    "paracetamol": DoseLimit(1000, 4000, Severity.HIGH),
    "ibuprofen": DoseLimit(800, 2400, Severity.MEDIUM, elderly_max_daily_mg=1200),
    "amoxicillin": DoseLimit(1000, 3000, Severity.MEDIUM),
    "metformin": DoseLimit(1000, 2000, Severity.MEDIUM),
    "simvastatin": DoseLimit(80, 80, Severity.HIGH, elderly_max_daily_mg=40),
    "warfarin": DoseLimit(10, 10, Severity.HIGH),
    "methotrexate": DoseLimit(25, 25, Severity.CRITICAL),
}

ALLERGEN_COMPONENTS: dict[str, list[str]] = {
    "amoxicillin": ["penicillin"],
    "flucloxacillin": ["penicillin"],
    "phenoxymethylpenicillin": ["penicillin"],
    "co-amoxiclav": ["penicillin", "clavulanic acid"],
    "augmentin": ["penicillin", "clavulanic acid"],
    "aspirin": ["salicylates", "nsaids"],
    "ibuprofen": ["nsaids"],
    "naproxen": ["nsaids"],
    "cefalexin": ["cephalosporin"],
    "trimethoprim": [],
    "co-trimoxazole": ["sulfonamide", "sulphonamide"],
}

CONTRAINDICATIONS: dict[str, list[Contraindication]] = {
    "ibuprofen": [
        Contraindication("peptic ulcer", Severity.HIGH),
        Contraindication("kidney disease", Severity.MEDIUM),
    ],
    "naproxen": [Contraindication("peptic ulcer", Severity.HIGH)],
    "metformin": [Contraindication("kidney failure", Severity.CRITICAL)],
    "propranolol": [
        Contraindication("asthma", Severity.CRITICAL),
        Contraindication("heart block", Severity.HIGH),
    ],
    "sildenafil": [Contraindication("recent stroke", Severity.HIGH)],
}


class ClinicalKnowledgeBase(Protocol):
    def interactions_for(self, medication: str) -> list[Interaction]: ...

    def dose_limit_for(self, medication: str) -> DoseLimit | None: ...

    def allergen_components(self, medication: str) -> list[str]: ...

    def contraindications_for(self, medication: str) -> list[Contraindication]: ...


def mentions(text: str, term: str) -> bool:
    """True if ``term`` appears in ``text`` as whole word(s), ignoring case."""
    return re.search(rf"(?<![\w-]){re.escape(term.lower())}(?![\w-])", text.lower()) is not None


class StaticKnowledgeBase:
    """Knowledge tables held in memory."""

    def __init__(
        self,
        interactions: dict[str, list[Interaction]] | None = None,
        dose_limits: dict[str, DoseLimit] | None = None,
        allergens: dict[str, list[str]] | None = None,
        contraindications: dict[str, list[Contraindication]] | None = None,
    ):
        self.interactions = INTERACTIONS if interactions is None else interactions
        self.dose_limits = DOSE_LIMITS if dose_limits is None else dose_limits
        self.allergens = ALLERGEN_COMPONENTS if allergens is None else allergens
        self.contraindications = (
            CONTRAINDICATIONS if contraindications is None else contraindications
        )

    def interactions_for(self, medication: str) -> list[Interaction]:
        """Interactions in both directions, each seen from ``medication``'s side."""
        found = list(self._lookup(self.interactions, medication) or [])
        for drug, entries in self.interactions.items():
            for interaction in entries:
                if mentions(medication, interaction.interacts_with):
                    found.append(
                        Interaction(
                            interaction.interacts_with,
                            drug,
                            interaction.severity,
                            interaction.description,
                        )
                    )
        return found

    def dose_limit_for(self, medication: str) -> DoseLimit | None:
        return self._lookup(self.dose_limits, medication)

    def allergen_components(self, medication: str) -> list[str]:
        key = self._key(self.allergens, medication)
        if key is None:
            return []
        return [key, *self.allergens[key]]

    def contraindications_for(self, medication: str) -> list[Contraindication]:
        return self._lookup(self.contraindications, medication) or []

    @staticmethod
    def _key(table: dict, medication: str) -> str | None:
        for key in table:
            if mentions(medication, key):
                return key
        return None

    def _lookup(self, table: dict, medication: str):
        key = self._key(table, medication)
        return table[key] if key is not None else None
