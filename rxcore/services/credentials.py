"""
Bearer credential management for the prescribing registry.

Tokens come from an OAuth2 client-credentials exchange and are reused until
``expires_in`` minus a safety margin has passed. Concurrent callers that see
an expired token share a single exchange: the first becomes the leader, the
rest wait on its outcome. The state lock is never held while the exchange is
on the wire.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import httpx

from rxcore.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 3600


@dataclass
class _Flight:
    """One in-progress credential exchange that followers can wait on."""

    done: threading.Event = field(default_factory=threading.Event)
    token: str | None = None
    error: AuthenticationError | None = None


class CredentialManager:
    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: str = "",
        safety_margin: float = 300,
        http: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.safety_margin = safety_margin
        self._http = http or httpx.Client(timeout=30.0)
        self._clock = clock

        self._token: str | None = None
        self._expires_at: float = 0.0
        self._lock = threading.Lock()
        self._flight: _Flight | None = None
        self.exchange_count = 0

    def get_token(self) -> str:
        """Return a valid bearer token, exchanging credentials if needed."""
        with self._lock:
            if self._token and self._clock() < self._expires_at:
                return self._token
            flight = self._flight
            leader = flight is None
            if leader:
                flight = self._flight = _Flight()

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.token  # type: ignore[return-value]

        try:
            token, lifetime = self._exchange()
            with self._lock:
                self._token = token
                self._expires_at = self._clock() + lifetime - self.safety_margin
            flight.token = token
            return token
        except AuthenticationError as exc:
            flight.error = exc
            raise
        except BaseException as exc:
            flight.error = AuthenticationError("Failed to authenticate with the registry")
            flight.error.__cause__ = exc
            raise
        finally:
            # Followers must never wait on a flight nobody will finish.
            with self._lock:
                self._flight = None
            flight.done.set()

    def close(self) -> None:
        self._http.close()

    def invalidate(self, token: str | None = None) -> None:
        """
        Forget the cached token so the next call exchanges again.
        With ``token`` given, only forget it if it is still the current one,
        so a burst of 401s for the same stale token triggers one refresh.
        """
        with self._lock:
            if token is None or token == self._token:
                self._token = None
                self._expires_at = 0.0

    def _exchange(self) -> tuple[str, float]:
        self.exchange_count += 1
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.scope:
            form["scope"] = self.scope
        try:
            response = self._http.post(
                self.token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            response.raise_for_status()
            body = response.json()
            token = body["access_token"]
            lifetime = float(body.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        except (httpx.HTTPError, KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.error("Registry credential exchange failed: %s", exc)
            raise AuthenticationError("Failed to authenticate with the registry") from exc

        logger.info("Obtained registry token (expires in %ss)", int(lifetime))
        return token, lifetime
