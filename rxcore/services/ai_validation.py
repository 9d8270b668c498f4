"""
Optional remote-model pass layered over the rule engine.

The engine's result is always computed first. When a remote model is
configured the prescription and patient context are sent to it, and issues
it reports with enough confidence are appended (never deduplicated) to the
engine's issues. Anything that goes wrong on the remote side leaves the
engine's result untouched: the model can add findings but never block or
break a validation.

Pharmacist overrides of AI-generated issues are forwarded to the model's
feedback endpoint in the background, fire-and-forget.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

import httpx

from rxcore.exceptions import RemoteModelError
from rxcore.schemas.fhir import REMOTE_ISSUE_SCHEMA, REMOTE_VALIDATION_RESPONSE_SCHEMA
from rxcore.schemas.validation import IssueType, Severity, ValidationIssue, ValidationResult
from rxcore.services.audit import AuditService
from rxcore.services.cache import ResponseCache
from rxcore.services.schema_check import validate_against_schema
from rxcore.services.validation_engine import ValidationEngine, ValidationInputs

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 1.0
AI_RESULT_KEY = "ai_result:"
# How long an AI-flagged result stays eligible for feedback.
FEEDBACK_WINDOW = 24 * 3600


class RemoteValidationModel:
    """HTTP client for the remote validation model."""

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self._http = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )

    def analyse(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._post(self.url, payload)

    def send_feedback(self, payload: dict[str, Any]) -> None:
        self._post(f"{self.url}/feedback", payload)

    def close(self) -> None:
        self._http.close()

    def _post(self, url: str, payload: dict[str, Any]) -> Any:
        try:
            response = self._http.post(url, json=payload)
            response.raise_for_status()
            return response.json() if response.content else None
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise RemoteModelError(f"Remote model request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise RemoteModelError(f"Remote model returned invalid JSON: {exc}") from exc


def build_payload(inputs: ValidationInputs) -> dict[str, Any]:
    prescription = inputs.prescription
    dosage = prescription.dosage
    context = inputs.context
    return {
        "prescription": {
            "id": prescription.id,
            "medications": [
                {
                    "name": name,
                    "dosage": dosage.describe() if dosage else "",
                    "frequency": (dosage.text or "") if dosage else "",
                }
                for name in prescription.medication_names
            ],
        },
        "patient": {
            "age": context.age if context else None,
            "weight": context.weight_kg if context else None,
            "gender": context.gender if context else None,
            "allergies": context.allergies if context else [],
            "currentMedications": context.current_medications if context else [],
            "conditions": context.conditions if context else [],
        },
    }


def parse_remote_issues(body: Any, threshold: float) -> list[ValidationIssue]:
    """
    Convert the model's answer to issues. Malformed issues are dropped, as
    are issues whose confidence is below ``threshold``. A response without
    an ``issues`` array raises RemoteModelError.
    """
    errors = validate_against_schema(body, REMOTE_VALIDATION_RESPONSE_SCHEMA)
    if errors:
        raise RemoteModelError(f"Malformed remote model response: {'; '.join(errors)}")

    issues = []
    for raw in body["issues"]:
        raw = dict(raw)
        for field in ("type", "severity"):
            if isinstance(raw.get(field), str):
                raw[field] = raw[field].lower()
        errors = validate_against_schema(raw, REMOTE_ISSUE_SCHEMA)
        if errors:
            logger.warning("Dropping malformed remote issue: %s", "; ".join(errors))
            continue
        confidence = raw.get("confidence", DEFAULT_CONFIDENCE)
        if confidence < threshold:
            logger.debug("Dropping remote issue below confidence threshold (%.2f)", confidence)
            continue
        issues.append(
            ValidationIssue(
                type=IssueType(raw["type"]),
                severity=Severity(raw["severity"]),
                description=raw["description"],
                medications=tuple(raw.get("medications") or ()),
                confidence=confidence,
                ai_generated=True,
            )
        )
    return issues


class AIValidationService:
    def __init__(
        self,
        engine: ValidationEngine,
        model: RemoteValidationModel | None = None,
        audit: AuditService | None = None,
        *,
        threshold: float = 0.7,
        enable_learning: bool = True,
        executor: ThreadPoolExecutor | None = None,
        flagged: ResponseCache | None = None,
    ):
        self.engine = engine
        self.model = model
        self.audit = audit
        self.threshold = threshold
        self.enable_learning = enable_learning
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="ai-feedback"
        )
        self._flagged = flagged or ResponseCache(default_ttl=FEEDBACK_WINDOW)

    def validate(self, prescription_id: str) -> ValidationResult:
        inputs = self.engine.load(prescription_id)
        result = self.engine.run(inputs)
        if self.model is not None:
            result = self._enhance(result, inputs)
        self.engine.report(result, inputs.prescription)
        return result

    def report_override(
        self, result_id: str, issue_id: str, is_positive: bool, user_id: str | None = None
    ) -> Future | None:
        """
        Queue feedback on an AI-generated issue. Returns the background
        future, or None when nothing is sent (learning disabled, no model,
        or the issue was not flagged by the model).
        """
        if not self.enable_learning or self.model is None:
            return None
        if issue_id not in (self._flagged.get(f"{AI_RESULT_KEY}{result_id}") or ()):
            logger.debug("Issue %s on result %s is not AI-generated; no feedback sent", issue_id, result_id)
            return None
        payload = {
            "issueId": issue_id,
            "isPositive": is_positive,
            "resultId": result_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return self._executor.submit(self._send_feedback, payload, user_id)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        if self.model is not None:
            self.model.close()

    def _enhance(self, base: ValidationResult, inputs: ValidationInputs) -> ValidationResult:
        try:
            body = self.model.analyse(build_payload(inputs))
            extra = parse_remote_issues(body, self.threshold)
        except RemoteModelError as exc:
            logger.error("AI validation failed for %s: %s", base.prescription_id, exc)
            if self.audit is not None:
                self.audit.log_prescription_action(
                    "AI_VALIDATION_ERROR", base.prescription_id, detail={"error": str(exc)}
                )
            return base
        except Exception as exc:
            logger.exception("Unexpected AI validation failure for %s", base.prescription_id)
            if self.audit is not None:
                self.audit.log_prescription_action(
                    "AI_VALIDATION_ERROR", base.prescription_id, detail={"error": str(exc)}
                )
            return base

        result = base.with_additional_issues(extra)
        if extra:
            self._flagged.set(f"{AI_RESULT_KEY}{result.id}", frozenset(i.id for i in extra))
        logger.info(
            "AI validation added %d issue(s) to prescription %s", len(extra), base.prescription_id
        )
        return result

    def _send_feedback(self, payload: dict[str, Any], user_id: str | None) -> None:
        try:
            self.model.send_feedback(payload)
        except RemoteModelError as exc:
            logger.error("AI feedback for issue %s failed: %s", payload["issueId"], exc)
            if self.audit is not None:
                self.audit.log_action(
                    "AI_FEEDBACK_ERROR",
                    user_id=user_id,
                    detail={"resultId": payload["resultId"], "issueId": payload["issueId"], "error": str(exc)},
                )
            return
        if self.audit is not None:
            self.audit.log_action(
                "AI_FEEDBACK",
                user_id=user_id,
                detail={
                    "resultId": payload["resultId"],
                    "issueId": payload["issueId"],
                    "isPositive": payload["isPositive"],
                },
            )
