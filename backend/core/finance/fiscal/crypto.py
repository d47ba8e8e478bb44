from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings


class TokenCryptoError(RuntimeError):
    """Raised when secret encryption/decryption fails."""

    code = "TOKEN_CRYPTO_ERROR"
    retryable = False


def _settings_key() -> bytes:
    configured = (getattr(settings, "FISCAL_TOKEN_ENCRYPTION_KEY", "") or "").strip()
    if configured:
        return configured.encode("utf-8")

    # Local/dev fallback. Rotating SECRET_KEY makes stored secrets undecryptable.
    digest = hashlib.sha256(settings.SECRET_KEY.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class TokenCipher:
    """Fernet wrapper for secrets stored in tenant fiscal config rows."""

    def __init__(self, key: bytes | str) -> None:
        if isinstance(key, str):
            key = key.encode("utf-8")
        try:
            self._fernet = Fernet(key)
        except (TypeError, ValueError) as exc:
            raise TokenCryptoError("Invalid Fernet key.") from exc

    @classmethod
    def from_settings(cls) -> "TokenCipher":
        return cls(_settings_key())

    def encrypt(self, value: str) -> str:
        if not value:
            return ""
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        if not token:
            return ""
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise TokenCryptoError("Invalid encrypted token.") from exc
