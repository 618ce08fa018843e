from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from app.core.envelope import success
from app.core.pagination import page_meta, paginate
from app.deps import Principal, ensure_self_or_admin, get_current_principal, require_admin
from app.services import users as user_service

router = APIRouter()


class AddressUpdate(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    zip_code: str | None = None


class ProfileUpdate(BaseModel):
    phone: str | None = Field(default=None, pattern=r"^\+?[1-9]\d{0,15}$")
    date_of_birth: date | None = None
    gender: Literal["male", "female", "other", "prefer_not_to_say"] | None = None
    address: AddressUpdate | None = None


class NotificationUpdate(BaseModel):
    email: bool | None = None
    push: bool | None = None
    sms: bool | None = None


class PreferencesUpdate(BaseModel):
    language: Literal["ar", "en"] | None = None
    currency: Literal["SAR", "USD", "EUR"] | None = None
    notifications: NotificationUpdate | None = None
    theme: Literal["light", "dark", "auto"] | None = None


class ProfileUpdateRequest(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=50)
    photo_url: str | None = None
    profile: ProfileUpdate | None = None
    preferences: PreferencesUpdate | None = None


class UserPatchRequest(ProfileUpdateRequest):
    model_config = ConfigDict(extra="forbid")

    status: Literal["active", "suspended", "banned", "pending"] | None = None
    role: Literal["customer", "staff", "manager", "admin"] | None = None


@router.get("/profile/{uid}")
async def get_profile(uid: str, principal: Principal = Depends(get_current_principal)):
    ensure_self_or_admin(principal, uid, "Not allowed to view this profile")
    user = await user_service.get_by_uid_or_404(uid)
    return success("Profile fetched", {"user": user.to_safe_dict()})


@router.put("/profile/{uid}")
async def update_profile(uid: str, body: ProfileUpdateRequest, principal: Principal = Depends(get_current_principal)):
    """Merge profile and preferences into the stored ones; unset fields are left alone."""
    ensure_self_or_admin(principal, uid, "Not allowed to update this profile")
    user = await user_service.update_profile(uid, body.model_dump(exclude_none=True))
    return success("Profile updated", {"user": user.to_safe_dict()})


@router.get("/leaderboard")
async def leaderboard(limit: int = Query(10, ge=1, le=100)):
    return success("Leaderboard fetched", {"top_users": await user_service.leaderboard(limit), "limit": limit})


@router.get("")
async def list_users(
    admin: Principal = Depends(require_admin),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: str | None = Query(None),
    role: str | None = Query(None),
):
    page, limit, skip = paginate(page, limit)
    users, total = await user_service.list_users(skip, limit, status=status, role=role)
    return success(
        "Users fetched",
        {"users": [u.to_safe_dict() for u in users], "pagination": page_meta(page, limit, total)},
    )


@router.get("/{identifier}")
async def get_user(identifier: str, principal: Principal = Depends(get_current_principal)):
    """Look up by document id or uid."""
    user = await user_service.get_by_id_or_uid(identifier)
    ensure_self_or_admin(principal, user.uid, "Not allowed to view this user")
    return success("User fetched", {"user": user.to_safe_dict()})


@router.patch("/{identifier}")
async def patch_user(identifier: str, body: UserPatchRequest, principal: Principal = Depends(get_current_principal)):
    user, changed = await user_service.patch_user(principal, identifier, body.model_dump(exclude_none=True))
    return success("User updated", {"user": user.to_safe_dict(), "updated_fields": changed})


@router.delete("/{identifier}")
async def delete_user(identifier: str, admin: Principal = Depends(require_admin)):
    user = await user_service.soft_delete_user(admin, identifier)
    return success("User deleted", {"uid": user.uid, "deleted_at": user.deleted_at.isoformat()})
