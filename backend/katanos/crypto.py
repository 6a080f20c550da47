"""Local secret cipher backed by a Fernet key file.

Plays the part of the desktop shell's safe-storage bridge: values come back
as ``enc$<token>`` and anything without the prefix is passed through.
"""
import logging
import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .schemas import CryptoResult

logger = logging.getLogger(__name__)

SECRET_PREFIX = "enc$"


class SecretCipher:
    async def encrypt_secret(self, plaintext: str) -> CryptoResult:
        raise NotImplementedError

    async def decrypt_secret(self, ciphertext: str) -> CryptoResult:
        raise NotImplementedError


class FernetSecretCipher(SecretCipher):
    def __init__(self, key: bytes) -> None:
        self._fernet = Fernet(key)

    @classmethod
    def from_key_file(cls, key_path: str | Path) -> "FernetSecretCipher":
        path = Path(key_path)
        if path.exists():
            key = path.read_bytes().strip()
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            key = Fernet.generate_key()
            path.write_bytes(key)
            # owner read/write only
            os.chmod(path, 0o600)
            logger.info("generated secret key at %s", path)
        return cls(key)

    async def encrypt_secret(self, plaintext: str) -> CryptoResult:
        if not isinstance(plaintext, str):
            return CryptoResult(ok=False, error="invalid")
        if not plaintext:
            return CryptoResult(ok=True, value="")
        if plaintext.startswith(SECRET_PREFIX):
            return CryptoResult(ok=True, value=plaintext)
        token = self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")
        return CryptoResult(ok=True, value=f"{SECRET_PREFIX}{token}")

    async def decrypt_secret(self, ciphertext: str) -> CryptoResult:
        if not isinstance(ciphertext, str):
            return CryptoResult(ok=False, error="invalid")
        if not ciphertext:
            return CryptoResult(ok=True, value="")
        if not ciphertext.startswith(SECRET_PREFIX):
            return CryptoResult(ok=True, value=ciphertext)
        try:
            plain = self._fernet.decrypt(ciphertext[len(SECRET_PREFIX):].encode("ascii"))
        except (InvalidToken, UnicodeEncodeError):
            logger.warning("secret decryption failed")
            return CryptoResult(ok=False, error="failed")
        return CryptoResult(ok=True, value=plain.decode("utf-8"))


def load_cipher(key_file: str) -> Optional[FernetSecretCipher]:
    if not key_file:
        return None
    try:
        return FernetSecretCipher.from_key_file(key_file)
    except (OSError, ValueError) as exc:
        logger.warning("secret cipher unavailable: %s", exc)
        return None
