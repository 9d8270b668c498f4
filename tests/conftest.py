"""Shared fixtures: in-memory database, fake registry and token endpoint."""

import json
import os

# Must be set before rxcore.config is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AI_API_KEY"] = ""

import httpx
import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rxcore.models import pharmacy  # noqa: F401  registers the tables
from rxcore.models.database import Base
from rxcore.services.audit import AuditService
from rxcore.services.cache import ResponseCache
from rxcore.services.clinical_context import ClinicalContextRepository
from rxcore.services.credentials import CredentialManager
from rxcore.services.encryption import EncryptionService
from rxcore.services.registry import RegistryClient
from rxcore.services.retry import RetryPolicy

BASE_URL = "https://registry.test/FHIR/R4/"
TOKEN_URL = "https://auth.test/oauth2/token"
PATIENT_ID = "9434765919"
ODS_CODE = "FA565"


def _make_request(
    prescription_id="rx-001",
    *,
    medication="Metformin 500mg tablets",
    status="active",
    patient_id=PATIENT_ID,
    authored_on="2026-09-01T09:00:00+00:00",
    quantity=56,
    dosage="1 tablet twice daily",
    repeat=None,
    dose=None,
    ods_code=ODS_CODE,
):
    """A registry MedicationRequest resource."""
    instruction = {}
    if dosage:
        instruction["text"] = dosage
    if repeat:
        instruction["timing"] = {"repeat": repeat}
    if dose:
        instruction["doseAndRate"] = [{"doseQuantity": dose}]
    return {
        "resourceType": "MedicationRequest",
        "id": prescription_id,
        "status": status,
        "intent": "order",
        "subject": {"reference": f"Patient/{patient_id}"},
        "authoredOn": authored_on,
        "medicationCodeableConcept": {"coding": [{"display": medication}]},
        "dosageInstruction": [instruction] if instruction else [],
        "dispenseRequest": {
            "quantity": {"value": quantity, "unit": "tablet"},
            "performer": {"reference": f"Organization/{ods_code}"},
        },
    }


class FakeRegistry:
    """Serves MedicationRequest resources; scripted statuses are returned first."""

    def __init__(self):
        self.resources = {}
        self.requests = []
        self.scripted = []

    def add(self, resource):
        self.resources[resource["id"]] = resource
        return resource

    def script(self, *statuses):
        self.scripted.extend(statuses)

    def count(self, method=None):
        return sum(1 for r in self.requests if method is None or r.method == method)

    def handler(self, request):
        self.requests.append(request)
        if self.scripted:
            status = self.scripted.pop(0)
            return httpx.Response(status, json={"message": f"scripted {status}"})

        rest = request.url.path.split("/MedicationRequest", 1)[1].strip("/")
        if request.method == "GET" and not rest:
            entries = [r for r in self.resources.values() if self._matches(r, request.url.params)]
            return httpx.Response(
                200,
                json={
                    "resourceType": "Bundle",
                    "total": len(entries),
                    "entry": [{"resource": r} for r in entries],
                },
            )
        if rest not in self.resources:
            return httpx.Response(
                404, json={"message": "Prescription not found", "errorCode": "RESOURCE_NOT_FOUND"}
            )
        if request.method == "PUT":
            update = json.loads(request.content)
            self.resources[rest] = {**self.resources[rest], "status": update["status"]}
        return httpx.Response(200, json=self.resources[rest])

    @staticmethod
    def _matches(resource, params):
        subject = params.get("subject")
        if subject and not resource.get("subject", {}).get("reference", "").endswith(f"/{subject}"):
            return False
        performer = params.get("performer")
        if performer:
            ref = resource.get("dispenseRequest", {}).get("performer", {}).get("reference", "")
            if not ref.endswith(f"/{performer}"):
                return False
        return True


class FakeAuth:
    """OAuth2 token endpoint issuing token-1, token-2, ..."""

    def __init__(self):
        self.issued = 0
        self.fail = False

    def handler(self, request):
        if self.fail:
            return httpx.Response(401, json={"error": "invalid_client"})
        self.issued += 1
        return httpx.Response(200, json={"access_token": f"token-{self.issued}", "expires_in": 3600})


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)


@pytest.fixture
def make_request():
    return _make_request


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def audit(session_factory):
    return AuditService(session_factory)


@pytest.fixture
def encryption():
    return EncryptionService(Fernet.generate_key())


@pytest.fixture
def contexts(session_factory, encryption):
    return ClinicalContextRepository(session_factory, encryption)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
def fake_auth():
    return FakeAuth()


@pytest.fixture
def sleeps():
    """Delays the retry policy would have slept, in order."""
    return []


@pytest.fixture
def retry_policy(sleeps):
    return RetryPolicy(max_retries=3, base_delay=1.0, jitter=1.0, rand=lambda: 0.5, sleep=sleeps.append)


@pytest.fixture
def credentials(fake_auth):
    manager = CredentialManager(
        TOKEN_URL,
        "client-id",
        "client-secret",
        http=httpx.Client(transport=httpx.MockTransport(fake_auth.handler)),
    )
    yield manager
    manager.close()


@pytest.fixture
def registry(fake_registry, credentials, audit, retry_policy):
    client = RegistryClient(
        BASE_URL,
        credentials,
        ResponseCache(),
        audit,
        api_key="test-api-key",
        retry=retry_policy,
        transport=httpx.MockTransport(fake_registry.handler),
    )
    yield client
    client.close()
