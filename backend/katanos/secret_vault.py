import logging
from typing import Optional

from .crypto import SECRET_PREFIX, SecretCipher
from .errors import CryptoUnavailable
from .events import Diagnostics
from .schemas import ErrorCode

logger = logging.getLogger(__name__)


def is_encrypted(value: object) -> bool:
    return isinstance(value, str) and value.startswith(SECRET_PREFIX)


class SecretVault:
    """Encrypts single secret fields (API keys) through a secret cipher.

    ``encrypt`` trades confidentiality for availability when no cipher
    works and keeps the trimmed plaintext. ``decrypt`` is fail-closed and
    never hands back ciphertext.
    """

    def __init__(self, cipher: Optional[SecretCipher], diagnostics: Diagnostics) -> None:
        self.cipher = cipher
        self.diagnostics = diagnostics

    def is_encrypted(self, value: object) -> bool:
        return is_encrypted(value)

    def _require_cipher(self) -> SecretCipher:
        if self.cipher is None:
            raise CryptoUnavailable("no secret cipher configured")
        return self.cipher

    async def encrypt(self, plaintext: str) -> str:
        trimmed = (plaintext or "").strip()
        if not trimmed:
            return ""
        if is_encrypted(trimmed):
            return trimmed
        try:
            result = await self._require_cipher().encrypt_secret(trimmed)
            if result.ok and result.value:
                return result.value
            reason = result.error or "empty result"
        except CryptoUnavailable as exc:
            reason = str(exc)
        except Exception as exc:
            logger.warning("secret encryption failed: %s", exc)
            reason = str(exc)
        self.diagnostics.record(
            ErrorCode.crypto_unavailable.value,
            "secret encryption unavailable; storing plain text",
            operation="encrypt",
            reason=reason,
        )
        return trimmed

    async def decrypt(self, value: Optional[str]) -> str:
        if not value:
            return ""
        if not is_encrypted(value):
            return value
        try:
            result = await self._require_cipher().decrypt_secret(value)
            if result.ok and isinstance(result.value, str):
                return result.value
            reason = result.error or "empty result"
        except CryptoUnavailable as exc:
            reason = str(exc)
        except Exception as exc:
            logger.warning("secret decryption failed: %s", exc)
            reason = str(exc)
        self.diagnostics.record(
            ErrorCode.crypto_unavailable.value,
            "secret decryption unavailable",
            operation="decrypt",
            reason=reason,
        )
        return ""
