import secrets
import time
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from app.core.logging import get_logger
from app.core.security import create_access_token, decode_access_token, hash_password, verify_password
from app.models.user import Activity, User

log = get_logger(__name__)

SELF_EDITABLE_FIELDS = ("display_name", "photo_url", "profile", "preferences")
ADMIN_ONLY_FIELDS = ("role", "status")


FIREBASE_ISSUER = "https://securetoken.google.com/{project_id}"


def verify_firebase_id_token(token: str) -> dict:
    """Verify a Firebase ID token; return decoded claims (sub/user_id, email, name, picture, firebase.sign_in_provider)."""
    project_id = get_settings().firebase_project_id
    if not project_id:
        raise UnauthorizedError("Firebase sign-in is not configured")
    try:
        claims = id_token.verify_firebase_token(token, google_requests.Request(), audience=project_id)
    except Exception as e:
        raise UnauthorizedError(f"Invalid Firebase token: {e}") from e
    if not claims:
        raise UnauthorizedError("Invalid Firebase token")
    if claims.get("aud") != project_id or claims.get("iss") != FIREBASE_ISSUER.format(project_id=project_id):
        raise UnauthorizedError("Firebase token was issued for another project")
    return claims


def _provider_from_claims(claims: dict) -> str:
    provider = (claims.get("firebase") or {}).get("sign_in_provider")
    if provider in ("google.com", "twitter.com"):
        return provider
    if provider == "password":
        return "email"
    return "firebase"


def _record_login(user: User, request_meta: dict[str, Any] | None) -> None:
    meta = request_meta or {}
    user.activity.last_login_at = datetime.utcnow()
    user.activity.login_count += 1
    user.activity.ip_address = meta.get("ip_address")
    user.activity.user_agent = meta.get("user_agent")


async def upsert_user_from_firebase(claims: dict, request_meta: dict[str, Any] | None = None) -> User:
    uid = claims.get("sub") or claims.get("user_id")
    if not uid:
        raise BadRequestError("Missing uid in token")
    email = (claims.get("email") or "").strip().lower()
    if not email:
        raise BadRequestError("Missing email in token")
    name = (claims.get("name") or email.split("@", 1)[0])[:50]
    picture = claims.get("picture")

    user = await User.find_one(User.uid == uid)
    if user:
        user.email = email
        user.display_name = name
        user.photo_url = picture
        _record_login(user, request_meta)
        await user.save()
        log.info("user_login", uid=user.uid, provider=user.provider)
        await log_event(user.uid, "user_login", "user", user.uid, {"provider": user.provider})
    else:
        meta = request_meta or {}
        user = User(
            uid=uid,
            email=email,
            display_name=name,
            photo_url=picture,
            provider=_provider_from_claims(claims),
            is_email_verified=bool(claims.get("email_verified", True)),
            activity=Activity(ip_address=meta.get("ip_address"), user_agent=meta.get("user_agent")),
        )
        await user.insert()
        log.info("user_created", uid=user.uid, provider=user.provider)
        await log_event(user.uid, "user_created", "user", user.uid, {"provider": user.provider})
    return user


def generate_email_uid() -> str:
    return f"email_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


async def register_user(
    email: str,
    password: str,
    display_name: str,
    request_meta: dict[str, Any] | None = None,
) -> User:
    email = email.strip().lower()
    if await User.find_one(User.email == email):
        raise ConflictError("Email already registered")
    meta = request_meta or {}
    user = User(
        uid=generate_email_uid(),
        email=email,
        display_name=display_name,
        provider="email",
        password_hash=hash_password(password),
        activity=Activity(ip_address=meta.get("ip_address"), user_agent=meta.get("user_agent")),
    )
    await user.insert()
    log.info("user_registered", uid=user.uid)
    await log_event(user.uid, "user_created", "user", user.uid, {"provider": "email"})
    return user


async def authenticate_user(email: str, password: str, request_meta: dict[str, Any] | None = None) -> User:
    user = await User.find_one(User.email == email.strip().lower())
    if not user or not verify_password(password, user.password_hash):
        log.info("user_login_failed", email=email)
        raise UnauthorizedError("Invalid email or password")
    if user.status != "active":
        raise ForbiddenError("Account is not active")
    _record_login(user, request_meta)
    await user.save()
    log.info("user_login", uid=user.uid, provider="email")
    return user


async def refresh_access_token(token: str) -> dict[str, Any]:
    """Re-issue an access token from a validly signed one, even if it has expired."""
    payload = decode_access_token(token, allow_expired=True)
    user = await User.find_one(User.uid == payload["sub"])
    if not user:
        raise NotFoundError("User not found")
    if user.status != "active":
        raise ForbiddenError("Account is not active")
    return create_access_token(user.uid, user.email, user.role)


def session_payload_for_user(user: User) -> dict:
    return {"uid": user.uid, "session_version": user.session_version}


async def logout_user(user: User) -> None:
    """Bump session_version so outstanding session tokens stop validating."""
    user.session_version += 1
    await user.save()
    log.info("user_logout", uid=user.uid)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _merge_submodel(current: BaseModel, updates: dict[str, Any]) -> BaseModel:
    try:
        return type(current).model_validate(_deep_merge(current.model_dump(), updates))
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e, "Invalid profile data") from e


def apply_user_updates(user: User, updates: dict[str, Any]) -> list[str]:
    """Apply display/profile/preferences/role/status updates in place; return the changed field names."""
    if "points" in updates:
        raise BadRequestError("Points can only change through the points ledger")
    changed = []
    for field, value in updates.items():
        if value is None:
            continue
        if field in ("profile", "preferences"):
            setattr(user, field, _merge_submodel(getattr(user, field), value))
        elif field in SELF_EDITABLE_FIELDS or field in ADMIN_ONLY_FIELDS:
            setattr(user, field, value)
        else:
            continue
        changed.append(field)
    return changed


async def get_by_uid_or_404(uid: str) -> User:
    user = await User.find_one(User.uid == uid)
    if not user:
        raise NotFoundError("User not found")
    return user


async def get_by_id_or_uid(identifier: str) -> User:
    user = None
    if PydanticObjectId.is_valid(identifier):
        user = await User.get(PydanticObjectId(identifier))
    if not user:
        user = await User.find_one(User.uid == identifier)
    if not user:
        raise NotFoundError("User not found")
    return user


async def update_profile(uid: str, updates: dict[str, Any]) -> User:
    user = await get_by_uid_or_404(uid)
    allowed = {k: v for k, v in updates.items() if k in SELF_EDITABLE_FIELDS}
    apply_user_updates(user, allowed)
    await user.save()
    return user


async def patch_user(actor: Any, identifier: str, updates: dict[str, Any]) -> tuple[User, list[str]]:
    user = await get_by_id_or_uid(identifier)
    if actor.uid != user.uid and not actor.is_admin:
        raise ForbiddenError("Not allowed to modify this user")
    for field in ADMIN_ONLY_FIELDS:
        if updates.get(field) is not None and not actor.is_admin:
            raise ForbiddenError(f"Not allowed to modify {field}")
    changed = apply_user_updates(user, updates)
    await user.save()
    log.info("user_updated", uid=user.uid, fields=changed, actor_uid=actor.uid)
    if actor.is_admin and actor.uid != user.uid:
        await log_event(actor.uid, "user_update", "user", user.uid, {"fields": changed})
    return user, changed


async def soft_delete_user(actor: Any, identifier: str) -> User:
    user = await get_by_id_or_uid(identifier)
    if user.uid == actor.uid:
        raise BadRequestError("Cannot delete your own account")
    user.status = "deleted"
    user.deleted_at = datetime.utcnow()
    await user.save()
    log.info("user_deleted", uid=user.uid, actor_uid=actor.uid)
    await log_event(actor.uid, "user_delete", "user", user.uid, {})
    return user


async def leaderboard(limit: int = 10) -> list[dict[str, Any]]:
    users = (
        await User.find(User.status == "active")
        .sort("-points.total")
        .limit(limit)
        .to_list()
    )
    return [
        {
            "uid": u.uid,
            "display_name": u.display_name,
            "photo_url": u.photo_url,
            "points": u.balance_dict(),
            "tier": u.loyalty.tier,
        }
        for u in users
    ]


async def list_users(skip: int, limit: int, status: str | None = None, role: str | None = None) -> tuple[list[User], int]:
    query: dict[str, Any] = {}
    if status:
        query["status"] = status
    if role:
        query["role"] = role
    total = await User.find(query).count()
    users = await User.find(query).sort(-User.created_at).skip(skip).limit(limit).to_list()
    return users, total
