"""Shared FastAPI dependencies: caller identity and role checks."""

from fastapi import Depends, Request
from pydantic import BaseModel

from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import bind_actor
from app.core.security import bearer_token, decode_access_token, load_session_token
from app.models.user import STAFF_ROLES, User

SESSION_COOKIE_NAME = "noir_session"
SESSION_HEADER_NAME = "X-Session-Token"


class Principal(BaseModel):
    """The authenticated caller, as seen by route handlers."""

    uid: str
    email: str
    display_name: str = ""
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(uid=user.uid, email=user.email, display_name=user.display_name, role=user.role)


async def _user_from_request(request: Request) -> User | None:
    """Resolve the caller from a bearer JWT, falling back to a legacy session token."""
    token = bearer_token(request.headers.get("Authorization"))
    if token:
        payload = decode_access_token(token)
        user = await User.find_one(User.uid == payload["sub"])
        if not user:
            raise UnauthorizedError("User not found")
        return user

    session_value = request.headers.get(SESSION_HEADER_NAME) or request.cookies.get(SESSION_COOKIE_NAME)
    if not session_value:
        return None
    payload = load_session_token(session_value)
    if not payload or not payload.get("uid"):
        raise UnauthorizedError("Invalid or expired session")
    user = await User.find_one(User.uid == payload["uid"])
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    return user


async def get_current_user(request: Request) -> User:
    """Dependency: authenticated, active User document."""
    user = await _user_from_request(request)
    if user is None:
        raise UnauthorizedError("Authentication token required")
    if user.status != "active":
        raise ForbiddenError("Account is not active")
    bind_actor(user.uid)
    return user


async def get_current_principal(user: User = Depends(get_current_user)) -> Principal:
    return Principal.from_user(user)


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("Admin only")
    return principal


async def require_staff(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_staff:
        raise ForbiddenError("Staff only")
    return principal


def ensure_self_or_admin(principal: Principal, uid: str, message: str = "Not allowed to access this user") -> None:
    if principal.uid != uid and not principal.is_admin:
        raise ForbiddenError(message)


def ensure_self_or_staff(principal: Principal, uid: str, message: str = "Not allowed to access this user") -> None:
    if principal.uid != uid and not principal.is_staff:
        raise ForbiddenError(message)


def request_meta(request: Request) -> dict[str, str | None]:
    """Client ip and user agent recorded on ledger entries and orders."""
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("User-Agent"),
    }
