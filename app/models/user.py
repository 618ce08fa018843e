from datetime import date, datetime
from typing import Any, Literal

from beanie import Document, Indexed, Insert, Replace, Save, SaveChanges, before_event
from pydantic import BaseModel, Field, field_validator

from app.services.tiers import classify_tier, points_to_next_tier

STAFF_ROLES = ("admin", "manager", "staff")


class PointsBalance(BaseModel):
    current: int = Field(default=0, ge=0)  # spendable now
    total: int = Field(default=0, ge=0)  # lifetime earned
    used: int = Field(default=0, ge=0)  # lifetime redeemed


class Loyalty(BaseModel):
    tier: Literal["bronze", "silver", "gold", "platinum"] = "bronze"
    join_date: datetime = Field(default_factory=datetime.utcnow)
    total_spent: float = 0
    order_count: int = 0


class NotificationSettings(BaseModel):
    email: bool = True
    push: bool = True
    sms: bool = False


class Preferences(BaseModel):
    language: Literal["ar", "en"] = "ar"
    currency: Literal["SAR", "USD", "EUR"] = "SAR"
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    theme: Literal["light", "dark", "auto"] = "light"


class Address(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    country: str = "SA"
    zip_code: str | None = None


class Profile(BaseModel):
    phone: str | None = Field(default=None, pattern=r"^\+?[1-9]\d{0,15}$")
    date_of_birth: date | None = None
    gender: Literal["male", "female", "other", "prefer_not_to_say"] | None = None
    address: Address = Field(default_factory=Address)


class Activity(BaseModel):
    last_login_at: datetime = Field(default_factory=datetime.utcnow)
    last_active_at: datetime = Field(default_factory=datetime.utcnow)
    login_count: int = 1
    ip_address: str | None = None
    user_agent: str | None = None


class User(Document):
    uid: Indexed(str, unique=True)
    email: Indexed(str, unique=True)
    display_name: str = Field(min_length=1, max_length=50)
    photo_url: str | None = None
    provider: Literal["google.com", "twitter.com", "email", "firebase"] = "email"
    password_hash: str | None = None
    is_email_verified: bool = False

    points: PointsBalance = Field(default_factory=PointsBalance)
    loyalty: Loyalty = Field(default_factory=Loyalty)
    preferences: Preferences = Field(default_factory=Preferences)
    profile: Profile = Field(default_factory=Profile)
    activity: Activity = Field(default_factory=Activity)

    status: Literal["active", "suspended", "banned", "pending", "deleted"] = "active"
    role: Literal["customer", "staff", "manager", "admin"] = "customer"
    session_version: int = 0
    deleted_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
        validate_on_save = True
        indexes = [
            [("points.current", -1)],
            [("points.total", -1)],
            [("loyalty.tier", 1)],
            [("created_at", -1)],
        ]

    @field_validator("email")
    @classmethod
    def _lowercase_email(cls, v: str) -> str:
        return v.strip().lower()

    @before_event(Insert, Replace, Save, SaveChanges)
    def _refresh_derived_fields(self) -> None:
        # Tier always follows whatever total holds at save time
        self.loyalty.tier = classify_tier(self.points.total)
        now = datetime.utcnow()
        self.activity.last_active_at = now
        self.updated_at = now

    @property
    def points_to_next_tier(self) -> int:
        return points_to_next_tier(self.loyalty.tier, self.points.total)

    def balance_dict(self) -> dict[str, int]:
        return {"current": self.points.current, "total": self.points.total, "used": self.points.used}

    def to_safe_dict(self) -> dict[str, Any]:
        """Public representation without credentials or session internals."""
        out = self.model_dump(mode="json", exclude={"password_hash", "session_version", "revision_id"})
        out["id"] = str(self.id) if self.id else None
        out["points_to_next_tier"] = self.points_to_next_tier
        return out
