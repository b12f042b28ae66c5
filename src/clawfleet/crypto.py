"""Symmetric encryption for secrets at rest (API keys, tokens, variables)."""

from __future__ import annotations

import base64
import binascii
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from clawfleet.config import get_settings
from clawfleet.errors import ConfigValidationError, SecretDecryptionError


def _fernet_for(raw: str) -> Fernet:
    try:
        return Fernet(raw.encode("utf-8"))
    except (ValueError, binascii.Error):
        # Not a Fernet key: stretch whatever passphrase we were given.
        digest = hashlib.sha256(raw.encode("utf-8")).digest()
        return Fernet(base64.urlsafe_b64encode(digest))


class SecretBox:
    def __init__(self, key: str) -> None:
        key = key.strip()
        if not key:
            raise ConfigValidationError("secrets.encryption_key is empty")
        self._fernet = _fernet_for(key)

    def encrypt(self, value: str | None) -> str | None:
        """Encrypt a secret; empty/None stays None so "not set" survives storage."""
        if not value:
            return None
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str | None) -> str | None:
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise SecretDecryptionError("Stored secret could not be decrypted") from exc


def get_secret_box() -> SecretBox:
    key = get_settings().secrets.encryption_key
    if key is None:
        raise ConfigValidationError(
            "secrets.encryption_key is not set (SECRETS__ENCRYPTION_KEY in .env)"
        )
    return SecretBox(key.get_secret_value())


def mask_secret(value: str | None) -> str | None:
    """``sk-a...wxyz`` style masking for display; short values are fully hidden."""
    if not value:
        return None
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"
