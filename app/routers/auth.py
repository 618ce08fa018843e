from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, EmailStr, Field

from app.core.config import get_settings
from app.core.envelope import success
from app.core.exceptions import UnauthorizedError
from app.core.security import bearer_token, create_access_token, create_session_token, decode_access_token
from app.deps import SESSION_COOKIE_NAME, get_current_user, request_meta
from app.models.user import User
from app.services import users as user_service

router = APIRouter()


class FirebaseAuthRequest(BaseModel):
    id_token: str = Field(min_length=1)


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    display_name: str = Field(min_length=1, max_length=50)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RefreshRequest(BaseModel):
    token: str = Field(min_length=1)


def _issue_credentials(user: User, response: Response) -> dict:
    """Access token for the body plus the legacy session token, also set as an httpOnly cookie."""
    settings = get_settings()
    access = create_access_token(user.uid, user.email, user.role)
    session_value = create_session_token(user_service.session_payload_for_user(user))
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=session_value,
        max_age=settings.session_max_age_seconds,
        httponly=True,
        secure=settings.env == "production",
        samesite="lax",
        path="/",
    )
    return {"user": user.to_safe_dict(), **access, "session_token": session_value}


@router.post("/firebase")
async def auth_firebase(body: FirebaseAuthRequest, request: Request, response: Response):
    """Exchange a Firebase ID token for an access token; creates the user on first sign-in."""
    claims = user_service.verify_firebase_id_token(body.id_token)
    user = await user_service.upsert_user_from_firebase(claims, request_meta(request))
    return success("Signed in", _issue_credentials(user, response))


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def auth_register(body: RegisterRequest, request: Request, response: Response):
    user = await user_service.register_user(body.email, body.password, body.display_name, request_meta(request))
    return success("Account created", _issue_credentials(user, response))


@router.post("/login")
async def auth_login(body: LoginRequest, request: Request, response: Response):
    user = await user_service.authenticate_user(body.email, body.password, request_meta(request))
    return success("Signed in", _issue_credentials(user, response))


@router.post("/refresh")
async def auth_refresh(body: RefreshRequest):
    return success("Token refreshed", await user_service.refresh_access_token(body.token))


@router.get("/verify")
async def auth_verify(request: Request):
    token = bearer_token(request.headers.get("Authorization"))
    if not token:
        raise UnauthorizedError("No token provided")
    payload = decode_access_token(token)
    user = await user_service.get_by_uid_or_404(payload["sub"])
    return success("Token is valid", {"user": user.to_safe_dict(), "token_valid": True})


@router.get("/me")
async def auth_me(user: User = Depends(get_current_user)):
    """Return current user. Accepts a bearer token or the session cookie."""
    return success("Current user", {"user": user.to_safe_dict()})


@router.post("/logout")
async def auth_logout(response: Response, user: User = Depends(get_current_user)):
    await user_service.logout_user(user)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return success("Signed out")
