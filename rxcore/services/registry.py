"""
Resilient client for the electronic prescribing registry (EPS, FHIR R4).

Reads go through the response cache; a miss acquires a bearer token, sends
the request with a fresh correlation id (``X-Request-ID`` /
``X-Correlation-ID``, repeated in the audit trail), caches the parsed
result and returns it. Writes read the current resource past the cache,
enforce the status-transition rules, and invalidate every cached view of
the prescription once the registry has accepted the change.

Failure handling:
- 429, 503 and 504 are retried with exponential backoff and jitter,
  up to ``RetryPolicy.max_retries`` extra attempts
- any other error status fails immediately
- 401 drops the token, fetches a fresh one once and repeats the request once
- the final failure is raised as RegistryError and audited, except plain
  rate limiting (429), which is left out of the audit trail to avoid flooding it
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable
from uuid import uuid4

import httpx
from pydantic import ValidationError

from rxcore.exceptions import RegistryError, StatusTransitionError
from rxcore.schemas.fhir import MEDICATION_REQUEST_SCHEMA
from rxcore.schemas.prescription import (
    Prescription,
    PrescriptionBundle,
    PrescriptionSearchParams,
    PrescriptionStatus,
    StatusReason,
)
from rxcore.services.audit import AuditService, mask_nhs_number
from rxcore.services.cache import ResponseCache
from rxcore.services.credentials import CredentialManager
from rxcore.services.retry import RetryPolicy, is_retryable
from rxcore.services.schema_check import validate_against_schema

logger = logging.getLogger(__name__)

STATUS_REASON_SYSTEM = "https://fhir.nhs.uk/CodeSystem/prescription-status-reason"

ALLOWED_TRANSITIONS: dict[PrescriptionStatus, frozenset[PrescriptionStatus]] = {
    PrescriptionStatus.ACTIVE: frozenset(
        {PrescriptionStatus.COMPLETED, PrescriptionStatus.CANCELLED, PrescriptionStatus.ON_HOLD}
    ),
    PrescriptionStatus.ON_HOLD: frozenset({PrescriptionStatus.ACTIVE}),
}

DISPENSED = StatusReason(code="dispensed", display="Medication has been dispensed")

# Cache key prefixes
PRESCRIPTION_KEY = "prescription:"
PHARMACY_KEY = "pharmacy_prescriptions:"
PATIENT_KEY = "patient_prescriptions:"
SEARCH_KEY = "search_prescriptions:"

# Search parameters that identify a patient; kept out of audit detail.
IDENTIFYING_PARAMS = frozenset({"subject", "subject.display", "_content", "medication.display"})


def _normalise(params: dict[str, str]) -> str:
    return json.dumps(params, sort_keys=True, separators=(",", ":"))


def check_transition(prescription: Prescription, target: PrescriptionStatus) -> None:
    """Raise StatusTransitionError unless ``prescription`` may move to ``target``."""
    allowed = ALLOWED_TRANSITIONS.get(prescription.status, frozenset())
    if target not in allowed:
        raise StatusTransitionError(prescription.id, prescription.status.value, target.value)


class RegistryClient:
    def __init__(
        self,
        base_url: str,
        credentials: CredentialManager,
        cache: ResponseCache,
        audit: AuditService | None = None,
        *,
        api_key: str = "",
        retry: RetryPolicy | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        prescription_ttl: float = 900,
        listing_ttl: float = 900,
        request_id_factory: Callable[[], str] = lambda: str(uuid4()),
    ):
        self.credentials = credentials
        self.cache = cache
        self.audit = audit
        self.api_key = api_key
        self.retry = retry or RetryPolicy()
        self.prescription_ttl = prescription_ttl
        self.listing_ttl = listing_ttl
        self._new_request_id = request_id_factory
        self._http = httpx.Client(
            base_url=base_url if base_url.endswith("/") else base_url + "/",
            timeout=timeout,
            transport=transport,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_prescription(self, prescription_id: str) -> Prescription:
        key = f"{PRESCRIPTION_KEY}{prescription_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        prescription, request_id = self._fetch_prescription(prescription_id)
        self.cache.set(key, prescription, self.prescription_ttl)
        self._audit(
            "GET_PRESCRIPTION",
            prescription_id=prescription_id,
            detail={"requestId": request_id},
        )
        return prescription

    def list_for_pharmacy(
        self, ods_code: str, filters: PrescriptionSearchParams | None = None
    ) -> PrescriptionBundle:
        query = {"performer": ods_code, **(filters or PrescriptionSearchParams()).to_query()}
        return self._list(
            f"{PHARMACY_KEY}{ods_code}:{_normalise(query)}",
            query,
            context="list_for_pharmacy",
            action="GET_PHARMACY_PRESCRIPTIONS",
            detail={"odsCode": ods_code},
        )

    def list_for_patient(
        self, patient_id: str, filters: PrescriptionSearchParams | None = None
    ) -> PrescriptionBundle:
        query = {**(filters or PrescriptionSearchParams()).to_query(), "subject": patient_id}
        return self._list(
            f"{PATIENT_KEY}{patient_id}:{_normalise(query)}",
            query,
            context="list_for_patient",
            action="GET_PATIENT_PRESCRIPTIONS",
            nhs_number=patient_id,
        )

    def search(self, filters: PrescriptionSearchParams) -> PrescriptionBundle:
        query = filters.to_query()
        return self._list(
            f"{SEARCH_KEY}{_normalise(query)}",
            query,
            context="search",
            action="SEARCH_PRESCRIPTIONS",
            nhs_number=filters.nhs_number,
            detail={"params": {k: v for k, v in query.items() if k not in IDENTIFYING_PARAMS}},
        )

    # ── Writes ───────────────────────────────────────────────────────────────

    def update_status(
        self,
        prescription_id: str,
        new_status: PrescriptionStatus | str,
        reason: StatusReason | None = None,
    ) -> Prescription:
        """
        Move a prescription to ``new_status``. The current status is read
        from the registry (never the cache) and checked against
        ALLOWED_TRANSITIONS first. Setting a fixed target status is
        idempotent, so the PUT is retried like a read.
        """
        target = PrescriptionStatus(new_status)
        current, _ = self._fetch_prescription(prescription_id)
        check_transition(current, target)

        update: dict[str, Any] = {
            "resourceType": "MedicationRequest",
            "id": prescription_id,
            "status": target.value,
        }
        if reason is not None:
            update["statusReason"] = {
                "coding": [
                    {
                        "system": STATUS_REASON_SYSTEM,
                        "code": reason.code,
                        "display": reason.display,
                    }
                ],
                "text": reason.text or reason.display,
            }

        body, request_id, _ = self._request(
            "PUT",
            f"MedicationRequest/{prescription_id}",
            context="update_status",
            json_body=update,
            idempotent=True,
        )
        updated = self._parse_update(body, current, target)

        self.clear_prescription_cache(prescription_id)
        if current.pharmacy_code:
            self.clear_pharmacy_cache(current.pharmacy_code)
        if current.patient_id:
            self.clear_patient_cache(current.patient_id)
        self.cache.invalidate_prefix(SEARCH_KEY)

        self._audit(
            "UPDATE_PRESCRIPTION",
            prescription_id=prescription_id,
            detail={
                "requestId": request_id,
                "oldStatus": current.status.value,
                "newStatus": target.value,
                "statusReason": reason.display if reason else None,
            },
        )
        return updated

    def cancel(self, prescription_id: str, reason: StatusReason | str) -> Prescription:
        if isinstance(reason, str):
            reason = StatusReason(code="cancelled", display=reason)
        return self.update_status(prescription_id, PrescriptionStatus.CANCELLED, reason)

    def complete(self, prescription_id: str) -> Prescription:
        """Mark a prescription as dispensed."""
        return self.update_status(prescription_id, PrescriptionStatus.COMPLETED, DISPENSED)

    # ── Cache helpers ────────────────────────────────────────────────────────

    def clear_prescription_cache(self, prescription_id: str) -> None:
        self.cache.invalidate(f"{PRESCRIPTION_KEY}{prescription_id}")

    def clear_pharmacy_cache(self, ods_code: str) -> None:
        self.cache.invalidate_prefix(f"{PHARMACY_KEY}{ods_code}:")

    def clear_patient_cache(self, patient_id: str) -> None:
        self.cache.invalidate_prefix(f"{PATIENT_KEY}{patient_id}:")

    # ── Internals ────────────────────────────────────────────────────────────

    def _list(
        self,
        key: str,
        query: dict[str, str],
        *,
        context: str,
        action: str,
        nhs_number: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> PrescriptionBundle:
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        body, request_id, _ = self._request(
            "GET", "MedicationRequest", context=context, params=query
        )
        bundle = self._parse_bundle(body, context)
        self.cache.set(key, bundle, self.listing_ttl)
        self._audit(
            action,
            nhs_number=nhs_number,
            detail={"requestId": request_id, "count": bundle.total, **(detail or {})},
        )
        return bundle

    def _fetch_prescription(self, prescription_id: str) -> tuple[Prescription, str]:
        body, request_id, attempts = self._request(
            "GET", f"MedicationRequest/{prescription_id}", context="get_prescription"
        )
        errors = validate_against_schema(body, MEDICATION_REQUEST_SCHEMA)
        if not errors:
            try:
                return Prescription.model_validate(body), request_id
            except ValidationError as exc:
                errors = [str(exc)]
        logger.error(
            "Registry returned a malformed MedicationRequest %s: %s",
            prescription_id,
            "; ".join(errors),
        )
        raise RegistryError(
            f"Malformed MedicationRequest {prescription_id}",
            status_code=None,
            retryable=False,
            attempts=attempts,
            context="get_prescription",
        )

    def _parse_bundle(self, body: Any, context: str) -> PrescriptionBundle:
        prescriptions: list[Prescription] = []
        skipped = 0
        entries = (body.get("entry") or []) if isinstance(body, dict) else []
        for entry in entries:
            resource = entry.get("resource") if isinstance(entry, dict) else None
            errors = validate_against_schema(resource, MEDICATION_REQUEST_SCHEMA)
            if errors:
                skipped += 1
                logger.warning("%s: skipping malformed entry (%s)", context, errors[0])
                continue
            try:
                prescriptions.append(Prescription.model_validate(resource))
            except ValidationError as exc:
                skipped += 1
                logger.warning("%s: skipping unparseable entry: %s", context, exc)
        total = body.get("total") if isinstance(body, dict) else None
        if not isinstance(total, int) or isinstance(total, bool):
            total = len(prescriptions)
        return PrescriptionBundle(total=total, prescriptions=prescriptions, skipped=skipped)

    def _parse_update(
        self, body: Any, current: Prescription, target: PrescriptionStatus
    ) -> Prescription:
        if isinstance(body, dict) and not validate_against_schema(body, MEDICATION_REQUEST_SCHEMA):
            return Prescription.model_validate(body)
        # Some registries answer a PUT with an OperationOutcome only.
        return current.model_copy(update={"status": target})

    def _headers(self, token: str, request_id: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/fhir+json",
            "Accept": "application/fhir+json",
            "Authorization": f"Bearer {token}",
            "X-Request-ID": request_id,
            "X-Correlation-ID": request_id,
        }
        if self.api_key:
            headers["apikey"] = self.api_key
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        context: str,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
        idempotent: bool = True,
    ) -> tuple[Any, str, int]:
        """Send one logical request. Returns (json body, request id, attempts)."""
        attempts = 0
        retries = 0
        refreshed = False
        while True:
            attempts += 1
            token = self.credentials.get_token()
            request_id = self._new_request_id()
            try:
                response = self._http.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    headers=self._headers(token, request_id),
                )
            except httpx.TransportError as exc:
                raise self._failure(context, None, attempts, str(exc)) from exc

            status = response.status_code
            if status < 400:
                try:
                    body = response.json() if response.content else {}
                except ValueError as exc:
                    raise self._failure(context, status, attempts, "invalid JSON body") from exc
                return body, request_id, attempts

            if status == 401 and not refreshed:
                refreshed = True
                logger.warning("Registry rejected the token (%s); refreshing once", context)
                self.credentials.invalidate(token)
                continue

            if is_retryable(status) and idempotent and retries < self.retry.max_retries:
                delay = self.retry.wait(retries)
                retries += 1
                logger.warning(
                    "Registry %s returned %d; retried after %dms (retry %d/%d)",
                    context,
                    status,
                    round(delay * 1000),
                    retries,
                    self.retry.max_retries,
                )
                continue

            raise self._failure(context, status, attempts, response)

    def _failure(
        self, context: str, status: int | None, attempts: int, cause: httpx.Response | str
    ) -> RegistryError:
        error_code = None
        if isinstance(cause, httpx.Response):
            message = cause.reason_phrase
            try:
                body = cause.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                message = body.get("message") or message
                error_code = body.get("errorCode")
        else:
            message = cause

        error = RegistryError(
            f"Registry error ({context}): {message}",
            status_code=status,
            retryable=is_retryable(status),
            attempts=attempts,
            context=context,
            error_code=error_code,
        )
        logger.error(
            "Registry %s failed: status=%s attempts=%d code=%s",
            context,
            status,
            attempts,
            error_code,
        )
        if status != 429:
            self._audit(
                "API_ERROR",
                detail={
                    "context": context,
                    "statusCode": status,
                    "errorCode": error_code,
                    "attempts": attempts,
                },
            )
        return error

    def _audit(
        self,
        action: str,
        *,
        prescription_id: str | None = None,
        nhs_number: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        logger.debug(
            "Registry activity %s prescription=%s subject=%s",
            action,
            prescription_id or "-",
            mask_nhs_number(nhs_number) or "-",
        )
        if self.audit is not None:
            self.audit.log_action(
                action,
                prescription_id=prescription_id,
                nhs_number=nhs_number,
                detail=detail,
            )
