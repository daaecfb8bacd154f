# securechat/core/crypto.py

import base64
import os

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SCHEME = "pbkdf2_sha256"
ITERATIONS = 120_000
SALT_BYTES = 16
KEY_BYTES = 32


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()


def _b64d(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode())


def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )


def hash_secret(secret: str, iterations: int | None = None) -> str:
    """
    Derive a storable record for a room or admin password.

    Format: pbkdf2_sha256$<iterations>$<salt>$<key> (base64url, no padding)
    """
    iterations = iterations or ITERATIONS
    salt = os.urandom(SALT_BYTES)
    key = _kdf(salt, iterations).derive(secret.encode("utf-8"))
    return f"{SCHEME}${iterations}${_b64e(salt)}${_b64e(key)}"


def verify_secret(secret: str, record: str | None) -> bool:
    """
    Constant-time check of a secret against a record from hash_secret().
    Malformed or missing records never match.
    """
    if not record:
        return False
    try:
        scheme, iterations, salt_b64, key_b64 = record.split("$", 3)
        if scheme != SCHEME:
            return False
        kdf = _kdf(_b64d(salt_b64), int(iterations))
        kdf.verify(secret.encode("utf-8"), _b64d(key_b64))
    except (ValueError, InvalidKey):
        return False
    return True
