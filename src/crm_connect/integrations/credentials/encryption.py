"""Token encryption at rest and masking for diagnostics.

OAuth tokens are stored Fernet-encrypted. Decrypted values only live in
memory (wrapped in ``SecretStr`` by the repository) and are never logged;
``mask_token`` is the only form allowed in logs and API diagnostics.
"""

from __future__ import annotations

import structlog
from cryptography.fernet import Fernet, InvalidToken

from src.crm_connect.integrations.errors import ConfigurationError

logger = structlog.get_logger(__name__)


def mask_token(token: str | None, visible: int = 4) -> str:
    """Return a masked token such as ``ya29…a1b2``.

    Tokens too short to mask safely are fully hidden.
    """
    if not token:
        return "<none>"
    if len(token) <= visible * 3:
        return "***"
    return f"{token[:visible]}…{token[-visible:]}"


class TokenCipher:
    """Fernet wrapper used by the credential repository.

    Args:
        key: urlsafe base64-encoded 32-byte key (``Fernet.generate_key()``).

    Raises:
        ConfigurationError: If the key is missing or malformed.
    """

    def __init__(self, key: str) -> None:
        if not key:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not configured")
        try:
            self._fernet = Fernet(key.encode("utf-8"))
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not a valid Fernet key") from exc

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty token")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise ValueError("Cannot decrypt empty ciphertext")
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            # Key rotated or row tampered with; the credential is unusable
            logger.error("credentials.decrypt_failed")
            raise ConfigurationError("Stored token cannot be decrypted with the configured key") from exc
