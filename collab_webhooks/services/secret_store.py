"""Symmetric encryption of webhook signing secrets (JWE, A256GCM)."""

import hashlib
import logging

from jose import jwe
from jose.exceptions import JOSEError

from collab_webhooks.config import get_settings

logger = logging.getLogger(__name__)

MIN_MASTER_KEY_LENGTH = 32


class SecretStoreConfigError(RuntimeError):
    """The master key is missing or too short."""


class SecretUnavailableError(Exception):
    """A stored secret could not be decrypted."""


class SecretStore:
    def __init__(self, master_key: str | None = None):
        if master_key is None:
            master_key = get_settings().secrets_master_key
        if not master_key or len(master_key) < MIN_MASTER_KEY_LENGTH:
            raise SecretStoreConfigError(
                f"SECRETS_MASTER_KEY must be at least {MIN_MASTER_KEY_LENGTH} characters. "
                "Generate one with: openssl rand -hex 32"
            )
        # A256GCM with direct key agreement needs exactly 32 bytes
        self._key = hashlib.sha256(master_key.encode("utf-8")).digest()

    def encrypt(self, plaintext: str) -> str:
        token = jwe.encrypt(plaintext.encode("utf-8"), self._key, algorithm="dir", encryption="A256GCM")
        return token.decode("ascii") if isinstance(token, bytes) else token

    def decrypt(self, ciphertext: str) -> str:
        try:
            plaintext = jwe.decrypt(ciphertext, self._key)
        except (JOSEError, ValueError, TypeError) as exc:
            raise SecretUnavailableError("Webhook secret could not be decrypted") from exc
        if plaintext is None:
            raise SecretUnavailableError("Webhook secret could not be decrypted")
        return plaintext.decode("utf-8")
