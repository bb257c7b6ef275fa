from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class CredentialCipher(Protocol):
    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class FernetCipher:
    """Symmetric cipher for credentials stored on accounts."""

    def __init__(self, key: str | bytes):
        if not key:
            raise ValueError(
                "PROFITSYNC_ENCRYPTION_KEY is not set. Generate one with "
                "Fernet.generate_key() and export it."
            )
        self._fernet = Fernet(key if isinstance(key, bytes) else key.encode("utf-8"))

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty secret.")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise ValueError("Cannot decrypt empty secret.")
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            logger.error("[credentials] stored secret could not be decrypted")
            raise ValueError("Stored credential could not be decrypted (wrong key?)") from e


def seal_credentials(cipher: CredentialCipher, creds: dict[str, Any]) -> str:
    """Encrypt each non-empty value and serialize to JSON for the accounts table."""
    sealed = {k: cipher.encrypt(str(v)) for k, v in creds.items() if v not in (None, "")}
    return json.dumps(sealed, ensure_ascii=True, sort_keys=True)


def open_credentials(cipher: CredentialCipher, raw_json: str | None) -> dict[str, str]:
    loaded = json.loads(raw_json or "{}")
    if not isinstance(loaded, dict):
        raise ValueError("credentials_json must be a JSON object")
    return {k: cipher.decrypt(str(v)) for k, v in loaded.items()}


def cipher_from_settings(settings) -> FernetCipher | None:
    """None when no key is configured; accounts then carry no usable credentials."""
    if not settings.encryption_key:
        return None
    return FernetCipher(settings.encryption_key)
