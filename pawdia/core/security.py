import base64
import binascii
import hashlib
import hmac
import os
import uuid
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from pawdia.core.config import get_settings
from pawdia.core.exceptions import BadRequestError

PASSWORD_ITERATIONS = 100_000
PASSWORD_SCHEME = "pbkdf2_sha256"


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="pawdia-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_token(payload: dict[str, Any]) -> str:
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_token(token: str, max_age_seconds: int | None = None) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    max_age = max_age_seconds or get_settings().session_max_age_seconds
    try:
        return serializer.loads(token, max_age=max_age)
    except (BadSignature, SignatureExpired):
        return None


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def hash_password(password: str) -> str:
    """Return `pbkdf2_sha256$<iterations>$<salt>$<hash>` (base64 parts)."""
    salt = os.urandom(16)
    digest = _derive(password, salt, PASSWORD_ITERATIONS)
    return "$".join(
        [
            PASSWORD_SCHEME,
            str(PASSWORD_ITERATIONS),
            base64.b64encode(salt).decode(),
            base64.b64encode(digest).decode(),
        ]
    )


def verify_password(password: str, encoded: str) -> bool:
    """False for a wrong password and for any hash this module could not have produced."""
    try:
        scheme, iterations, salt_b64, hash_b64 = encoded.split("$")
        if scheme != PASSWORD_SCHEME:
            return False
        rounds = int(iterations)
        salt = base64.b64decode(salt_b64, validate=True)
        expected = base64.b64decode(hash_b64, validate=True)
    except (ValueError, binascii.Error):
        return False
    if rounds < 1 or not salt:
        return False
    return hmac.compare_digest(expected, _derive(password, salt, rounds))


def generate_request_id() -> str:
    return str(uuid.uuid4())


def require_idempotency_key(key: str | None) -> str:
    if not key or not key.strip():
        raise BadRequestError("Idempotency-Key header is required for this request")
    key = key.strip()
    if len(key) > 200:
        raise BadRequestError("Idempotency-Key is too long")
    return key
