import secrets
from datetime import datetime
from typing import Any, Literal

from beanie import Document, Indexed, Insert, Replace, Save, SaveChanges, before_event
from pydantic import BaseModel, Field, field_validator

TransactionType = Literal["purchase", "redemption", "bonus", "refund", "adjustment", "expiry"]
TransactionStatus = Literal["pending", "processing", "completed", "failed", "cancelled", "reversed"]

CREDIT_TYPES = ("purchase", "bonus", "refund")


class InvalidTransitionError(Exception):
    """Requested status change is not allowed from the current status."""


def generate_transaction_id() -> str:
    return f"PT{datetime.utcnow():%y%m%d}{secrets.token_hex(4).upper()}"


class TransactionUser(BaseModel):
    uid: str
    name: str = ""
    email: str = ""


class TransactionPoints(BaseModel):
    amount: int  # positive = credit, negative = debit
    balance_before: int = Field(ge=0)
    balance_after: int = Field(ge=0)

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("amount must be non-zero")
        return v


class RelatedOrder(BaseModel):
    order_id: str | None = None
    order_number: str | None = None
    order_total: float | None = None


class RelatedPackage(BaseModel):
    package_size: int
    purchase_price: float
    currency: str = "SAR"
    payment_method: Literal["card", "cash", "online", "gift"] = "card"
    payment_details: dict[str, Any] = Field(default_factory=dict)


class BonusInfo(BaseModel):
    reason: Literal[
        "welcome", "birthday", "loyalty", "promotion", "referral", "review", "social_share", "anniversary"
    ] = "promotion"
    description: str | None = None
    promotion_code: str | None = None


class RedeemedItem(BaseModel):
    product_name: str
    quantity: int = 1
    points_value: int = 0


class RedemptionInfo(BaseModel):
    items: list[RedeemedItem] = Field(default_factory=list)
    total_points_used: int


class AdminRef(BaseModel):
    admin_uid: str
    admin_name: str = ""


class AdjustmentInfo(BaseModel):
    reason: str
    adjusted_by: AdminRef | None = None
    notes: str | None = None


class ProcessingInfo(BaseModel):
    processed_at: datetime | None = None
    processing_duration_ms: int | None = None
    attempts: int = 0
    last_attempt_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = 0


class TransactionMetadata(BaseModel):
    source: Literal["website", "mobile_app", "pos", "admin_panel", "api", "cancellation"] = "website"
    ip_address: str | None = None
    user_agent: str | None = None
    initiated_by: str | None = None


class TransactionNotes(BaseModel):
    user: str | None = None
    admin: str | None = None
    system: str | None = None


class PointsTransaction(Document):
    transaction_id: Indexed(str, unique=True) = Field(default_factory=generate_transaction_id)
    user: TransactionUser
    type: TransactionType
    points: TransactionPoints
    description: str | None = None
    status: TransactionStatus = "pending"

    related_order: RelatedOrder | None = None
    related_package: RelatedPackage | None = None
    bonus: BonusInfo | None = None
    redemption: RedemptionInfo | None = None
    adjustment: AdjustmentInfo | None = None

    processing: ProcessingInfo = Field(default_factory=ProcessingInfo)
    metadata: TransactionMetadata = Field(default_factory=TransactionMetadata)
    notes: TransactionNotes = Field(default_factory=TransactionNotes)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "points_transactions"
        indexes = [
            [("user.uid", 1), ("created_at", -1)],
            [("type", 1), ("status", 1)],
            [("created_at", -1)],
            [("related_order.order_number", 1)],
            [("bonus.promotion_code", 1)],
        ]

    @before_event(Insert, Replace, Save, SaveChanges)
    def _touch(self) -> None:
        self.updated_at = datetime.utcnow()

    @property
    def display_amount(self) -> str:
        amount = self.points.amount
        return f"+{amount}" if amount > 0 else str(amount)

    def _finish(self, status: TransactionStatus) -> None:
        now = datetime.utcnow()
        self.status = status
        self.processing.processed_at = now
        self.processing.processing_duration_ms = int((now - self.created_at).total_seconds() * 1000)

    async def mark_completed(self) -> "PointsTransaction":
        self._finish("completed")
        await self.save()
        return self

    async def mark_failed(self, error_message: str) -> "PointsTransaction":
        self._finish("failed")
        self.processing.error_message = error_message
        self.processing.attempts += 1
        self.processing.last_attempt_at = datetime.utcnow()
        await self.save()
        return self

    async def retry(self, max_retries: int = 3) -> "PointsTransaction":
        """failed -> pending, bounded by max_retries."""
        if self.status != "failed":
            raise InvalidTransitionError("Only failed transactions can be retried")
        if self.processing.retry_count >= max_retries:
            raise InvalidTransitionError("Retry limit reached")
        self.status = "pending"
        self.processing.retry_count += 1
        self.processing.last_attempt_at = datetime.utcnow()
        await self.save()
        return self

    async def reverse(self, reason: str) -> "PointsTransaction":
        """completed -> reversed. Balances are left untouched."""
        if self.status != "completed":
            raise InvalidTransitionError("Only completed transactions can be reversed")
        self.status = "reversed"
        self.notes.system = reason
        await self.save()
        return self

    def to_public_dict(self) -> dict[str, Any]:
        out = self.model_dump(mode="json", exclude={"revision_id"})
        out["id"] = str(self.id) if self.id else None
        out["display_amount"] = self.display_amount
        return out
