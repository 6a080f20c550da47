import base64
import hashlib
import re
import secrets

PASSWORD_HASH_PREFIX = "pbkdf2"
PBKDF2_ITERATIONS = 150_000
PBKDF2_SALT_BYTES = 16
PBKDF2_HASH_BYTES = 32


def is_hashed_value(value: object) -> bool:
    return isinstance(value, str) and value.startswith(f"{PASSWORD_HASH_PREFIX}$")


def normalize_security_answer(value: str) -> str:
    return value.strip().lower()


def normalize_pin(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_bytes(PBKDF2_SALT_BYTES)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, PBKDF2_HASH_BYTES)
    salt_b64 = base64.b64encode(salt).decode("ascii")
    digest_b64 = base64.b64encode(digest).decode("ascii")
    return f"{PASSWORD_HASH_PREFIX}${iterations}${salt_b64}${digest_b64}"


def verify_password(password: str, stored_hash: str) -> bool:
    parts = stored_hash.split("$")
    if len(parts) != 4 or parts[0] != PASSWORD_HASH_PREFIX:
        return False
    try:
        iterations = int(parts[1])
        salt = base64.b64decode(parts[2], validate=True)
        expected = base64.b64decode(parts[3], validate=True)
    except ValueError:
        return False
    if iterations <= 0 or not expected:
        return False
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, len(expected))
    return secrets.compare_digest(derived, expected)


class Pbkdf2Hasher:
    """Hashing provider used by the credential store."""

    def __init__(self, iterations: int = PBKDF2_ITERATIONS) -> None:
        self.iterations = iterations

    def hash(self, secret: str) -> str:
        return hash_password(secret, self.iterations)

    def verify(self, secret: str, stored: str) -> bool:
        return verify_password(secret, stored)
