"""
Field-level encryption for patient identifiers stored by the core.

Only the patient's name is held encrypted (``PatientProfile.encrypted_name``);
it is decrypted when a pharmacist's intervention list is built. The key comes
from ``PHI_ENCRYPTION_KEY``.
"""

from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

from rxcore.config import settings

logger = logging.getLogger(__name__)


class EncryptionService:
    """Wraps Fernet symmetric encryption for PHI fields."""

    def __init__(self, key: str | bytes | None = None):
        raw_key = key or settings.PHI_ENCRYPTION_KEY
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            # Development only: names written with this key are unreadable after a restart.
            logger.warning("PHI_ENCRYPTION_KEY is not set; using an ephemeral key")
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str | None) -> str:
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str | None) -> str:
        """Decrypt a stored value; raises InvalidToken for a foreign key or tampered data."""
        if not ciphertext:
            return ""
        return self._fernet.decrypt(ciphertext.encode()).decode()

    def try_decrypt(self, ciphertext: str | None) -> str | None:
        """Like ``decrypt`` but returns None (and logs) when the value cannot be read."""
        try:
            return self.decrypt(ciphertext) or None
        except InvalidToken:
            logger.warning("Could not decrypt a stored patient name")
            return None
