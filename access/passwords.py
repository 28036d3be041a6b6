import base64
import binascii
import hashlib
import hmac
import os

PASSWORD_HASH_PREFIX = "pbkdf2$sha256"
DEFAULT_ITERATIONS = 210_000
DERIVED_KEY_LENGTH = 32


def hash_password(password: str, iterations: int = DEFAULT_ITERATIONS, salt: bytes = None) -> str:
    salt = salt or os.urandom(16)
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, DERIVED_KEY_LENGTH)
    return "$".join([
        PASSWORD_HASH_PREFIX,
        str(iterations),
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(derived).decode("ascii"),
    ])


def verify_password(password: str, encoded_hash: str) -> bool:
    parts = (encoded_hash or "").split("$")
    if len(parts) != 5 or f"{parts[0]}${parts[1]}" != PASSWORD_HASH_PREFIX:
        return False

    try:
        iterations = int(parts[2])
        salt = base64.b64decode(parts[3], validate=True)
        expected = base64.b64decode(parts[4], validate=True)
    except (ValueError, binascii.Error):
        return False
    if iterations <= 0 or not expected:
        return False

    computed = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, len(expected))
    return hmac.compare_digest(computed, expected)
