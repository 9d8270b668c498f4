"""
Construction and wiring of the integration core.

``build_services`` creates every component from a ``Settings`` object;
``get_services`` is the FastAPI dependency that holds one instance per
process. Tests build their own container or override the dependency.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from rxcore.config import Settings, settings as default_settings
from rxcore.services.adherence import AdherenceCalculator
from rxcore.services.ai_validation import AIValidationService, RemoteValidationModel
from rxcore.services.audit import AuditService
from rxcore.services.cache import ResponseCache
from rxcore.services.clinical_context import ClinicalContextRepository
from rxcore.services.credentials import CredentialManager
from rxcore.services.encryption import EncryptionService
from rxcore.services.knowledge import StaticKnowledgeBase
from rxcore.services.notifications import LoggingNotifier, Notifier
from rxcore.services.registry import RegistryClient
from rxcore.services.retry import RetryPolicy
from rxcore.services.validation_engine import ValidationEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    audit: AuditService
    cache: ResponseCache
    credentials: CredentialManager
    registry: RegistryClient
    contexts: ClinicalContextRepository
    engine: ValidationEngine
    validation: AIValidationService
    adherence: AdherenceCalculator
    notifier: Notifier

    def close(self) -> None:
        self.validation.close()
        self.registry.close()
        self.credentials.close()


def build_services(
    config: Settings | None = None,
    session_factory: Callable[[], Session] | None = None,
    *,
    notifier: Notifier | None = None,
    registry_transport=None,
    auth_transport=None,
    model_transport=None,
    retry: RetryPolicy | None = None,
) -> Services:
    """
    Wire up every component. The transports and retry policy are only
    overridden in tests.
    """
    config = config or default_settings
    if session_factory is None:
        from rxcore.models.database import SessionLocal

        session_factory = SessionLocal

    audit = AuditService(session_factory)
    notifier = notifier or LoggingNotifier()
    encryption = EncryptionService(config.PHI_ENCRYPTION_KEY or None)
    cache = ResponseCache(
        default_ttl=config.PRESCRIPTION_CACHE_TTL, check_period=config.CACHE_CHECK_PERIOD
    )
    credentials = CredentialManager(
        config.NHS_AUTH_URL,
        config.NHS_CLIENT_ID,
        config.NHS_CLIENT_SECRET,
        scope=config.NHS_TOKEN_SCOPE,
        safety_margin=config.TOKEN_SAFETY_MARGIN,
        http=httpx.Client(timeout=config.REGISTRY_TIMEOUT, transport=auth_transport),
    )
    registry = RegistryClient(
        config.NHS_API_BASE_URL,
        credentials,
        cache,
        audit,
        api_key=config.NHS_API_KEY,
        retry=retry or RetryPolicy(max_retries=config.REGISTRY_MAX_RETRIES),
        timeout=config.REGISTRY_TIMEOUT,
        transport=registry_transport,
        prescription_ttl=config.PRESCRIPTION_CACHE_TTL,
        listing_ttl=config.LISTING_CACHE_TTL,
    )
    contexts = ClinicalContextRepository(session_factory, encryption)
    engine = ValidationEngine(registry, contexts, StaticKnowledgeBase(), audit, notifier)

    model = None
    if config.AI_API_URL and config.AI_API_KEY:
        model = RemoteValidationModel(
            config.AI_API_URL, config.AI_API_KEY, transport=model_transport
        )
    else:
        logger.info("No remote validation model configured; rule checks only")

    validation = AIValidationService(
        engine,
        model,
        audit,
        threshold=config.AI_CONFIDENCE_THRESHOLD,
        enable_learning=config.AI_ENABLE_LEARNING,
    )
    adherence = AdherenceCalculator(registry, session_factory, notifier, audit, contexts)
    return Services(
        settings=config,
        audit=audit,
        cache=cache,
        credentials=credentials,
        registry=registry,
        contexts=contexts,
        engine=engine,
        validation=validation,
        adherence=adherence,
        notifier=notifier,
    )


_services: Services | None = None


def get_services() -> Services:
    """FastAPI dependency returning the process-wide container."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def shutdown_services() -> None:
    global _services
    if _services is not None:
        _services.close()
        _services = None
