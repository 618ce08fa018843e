import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from jose import ExpiredSignatureError, JWTError, jwt

from app.core.config import get_settings
from app.core.exceptions import UnauthorizedError

ACCESS_TOKEN_TYPE = "access"
PASSWORD_SCHEME = "pbkdf2_sha256"


# JWT bearer tokens

def create_access_token(uid: str, email: str, role: str) -> dict[str, Any]:
    """Issue a signed access token; returns token plus expiry info for the client."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=settings.jwt_expire_minutes)
    claims = {
        "sub": uid,
        "email": email,
        "role": role,
        "type": ACCESS_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, settings.jwt_signing_key, algorithm=settings.jwt_algorithm)
    return {
        "token": token,
        "expires_in": f"{settings.jwt_expire_minutes}m",
        "expires_at": expires_at.isoformat(),
    }


def decode_access_token(token: str, allow_expired: bool = False) -> dict[str, Any]:
    """
    Verify signature and claims of an access token.
    allow_expired skips only the exp check (used by refresh); the signature is always verified.
    """
    settings = get_settings()
    options = {"verify_exp": not allow_expired}
    try:
        payload = jwt.decode(
            token,
            settings.jwt_signing_key,
            algorithms=[settings.jwt_algorithm],
            options=options,
        )
    except ExpiredSignatureError as e:
        raise UnauthorizedError("Token expired") from e
    except JWTError as e:
        raise UnauthorizedError("Invalid token") from e
    if payload.get("type") != ACCESS_TOKEN_TYPE or not payload.get("sub"):
        raise UnauthorizedError("Invalid token")
    return payload


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


# Legacy session tokens

def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="noir-cafe-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_token(payload: dict[str, Any]) -> str:
    return get_session_serializer().dumps(payload)


def load_session_token(value: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(value, max_age=get_settings().session_max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None


# Passwords

def hash_password(password: str, salt: str | None = None) -> str:
    iterations = get_settings().password_hash_iterations
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    encoded = base64.b64encode(digest).decode("ascii")
    return f"{PASSWORD_SCHEME}${iterations}${salt}${encoded}"


def verify_password(password: str, stored: str | None) -> bool:
    if not stored:
        return False
    try:
        scheme, iterations, salt, expected = stored.split("$", 3)
    except ValueError:
        return False
    if scheme != PASSWORD_SCHEME:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), int(iterations))
    return hmac.compare_digest(base64.b64encode(digest).decode("ascii"), expected)
