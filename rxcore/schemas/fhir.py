"""
JSON schemas for payloads that cross the process boundary.

- MedicationRequest as returned by the prescribing registry (FHIR R4 subset)
- Issue list returned by the remote validation model

Only the structure the core depends on is pinned down; everything else a
registry sends is allowed through and ignored by the pydantic models.
"""

PRESCRIPTION_STATUSES = [
    "active",
    "on-hold",
    "cancelled",
    "completed",
    "entered-in-error",
    "stopped",
    "draft",
    "unknown",
]

_REFERENCE = {
    "type": "object",
    "properties": {
        "reference": {"type": "string"},
        "display": {"type": "string"},
    },
}

_QUANTITY = {
    "type": "object",
    "properties": {
        "value": {"type": "number"},
        "unit": {"type": "string"},
    },
}


MEDICATION_REQUEST_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "FHIR MedicationRequest (subset)",
    "type": "object",
    "required": ["resourceType", "id", "status", "subject"],
    "properties": {
        "resourceType": {"type": "string", "const": "MedicationRequest"},
        "id": {"type": "string", "minLength": 1},
        "status": {"type": "string", "enum": PRESCRIPTION_STATUSES},
        "subject": {**_REFERENCE, "required": ["reference"]},
        "authoredOn": {"type": "string"},
        "medicationReference": {**_REFERENCE, "required": ["display"]},
        "medicationCodeableConcept": {
            "type": "object",
            "properties": {
                "coding": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "system": {"type": "string"},
                            "code": {"type": "string"},
                            "display": {"type": "string"},
                        },
                    },
                },
                "text": {"type": "string"},
            },
        },
        "dosageInstruction": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "text": {"type": "string"},
                    "timing": {
                        "type": "object",
                        "properties": {
                            "repeat": {
                                "type": "object",
                                "properties": {
                                    "frequency": {"type": "number", "minimum": 0},
                                    "period": {"type": "number", "minimum": 0},
                                    "periodUnit": {"type": "string"},
                                },
                            }
                        },
                    },
                },
            },
        },
        "dispenseRequest": {
            "type": "object",
            "properties": {
                "quantity": _QUANTITY,
                "performer": _REFERENCE,
                "validityPeriod": {
                    "type": "object",
                    "properties": {
                        "start": {"type": "string"},
                        "end": {"type": "string"},
                    },
                },
            },
        },
    },
    "anyOf": [
        {"required": ["medicationReference"]},
        {"required": ["medicationCodeableConcept"]},
    ],
}


REMOTE_ISSUE_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Remote model validation issue",
    "type": "object",
    "required": ["type", "severity", "description"],
    "properties": {
        "type": {
            "type": "string",
            "enum": [
                "drug_interaction",
                "inappropriate_dosage",
                "allergy",
                "contraindication",
            ],
        },
        "severity": {
            "type": "string",
            "enum": ["critical", "high", "medium", "low", "none"],
        },
        "description": {"type": "string"},
        "medications": {"type": "array", "items": {"type": "string"}},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
}


REMOTE_VALIDATION_RESPONSE_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Remote model validation response",
    "type": "object",
    "required": ["issues"],
    "properties": {
        "issues": {"type": "array", "items": {"type": "object"}},
    },
}
