import secrets
from datetime import datetime
from typing import Any, Literal

from beanie import Document, Indexed, Insert, Replace, Save, SaveChanges, before_event
from pydantic import BaseModel, Field

from app.models.product import ProductCategory

OrderStatus = Literal["pending", "confirmed", "preparing", "ready", "completed", "cancelled"]
PaymentMethod = Literal["points", "cash", "card", "online", "mixed"]

# status -> timing field stamped on first entry into that status
STATUS_TIMESTAMPS: dict[str, str] = {
    "confirmed": "confirmed_at",
    "preparing": "preparing_at",
    "ready": "ready_at",
    "completed": "completed_at",
    "cancelled": "cancelled_at",
}


def generate_order_number() -> str:
    return f"NC{datetime.utcnow():%y%m%d}{secrets.randbelow(10_000):04d}"


class OrderCustomer(BaseModel):
    uid: str
    name: str
    email: str
    phone: str | None = None


class ItemCustomization(BaseModel):
    name: str
    value: str | None = None
    price: float = 0


class OrderItem(BaseModel):
    product_id: str | None = None
    name: str
    name_en: str | None = None
    price: float = Field(default=0, ge=0)
    points_price: int = Field(default=0, ge=0)
    quantity: int = Field(ge=1)
    category: ProductCategory = "other"
    image: str | None = None
    customizations: list[ItemCustomization] = Field(default_factory=list)
    subtotal: float = 0


class OrderTotals(BaseModel):
    subtotal: float = Field(default=0, ge=0)
    tax: float = Field(default=0, ge=0)
    discount: float = Field(default=0, ge=0)
    delivery: float = Field(default=0, ge=0)
    total: float = Field(default=0, ge=0)


class OrderPayment(BaseModel):
    method: PaymentMethod
    status: Literal["pending", "processing", "completed", "failed", "refunded"] = "pending"
    points_used: int = Field(default=0, ge=0)
    cash_amount: float = Field(default=0, ge=0)
    transaction_id: str | None = None
    gateway: str | None = None


class OrderTiming(BaseModel):
    placed_at: datetime = Field(default_factory=datetime.utcnow)
    confirmed_at: datetime | None = None
    preparing_at: datetime | None = None
    ready_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    estimated_ready_time: datetime | None = None


class DeliveryInfo(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str = "SA"
    instructions: str | None = None


class StaffRef(BaseModel):
    id: str
    name: str = ""


class OrderStaff(BaseModel):
    cashier: StaffRef | None = None
    barista: StaffRef | None = None
    manager: StaffRef | None = None


class OrderNotes(BaseModel):
    customer: str | None = None
    staff: str | None = None
    kitchen: str | None = None


class Feedback(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=500)
    submitted_at: datetime = Field(default_factory=datetime.utcnow)


class Cancellation(BaseModel):
    cancelled_by: str
    cancelled_at: datetime = Field(default_factory=datetime.utcnow)
    reason: str
    refund_issued: bool = False


class OrderMetadata(BaseModel):
    source: Literal["website", "mobile_app", "pos", "phone", "social_media"] = "website"
    ip_address: str | None = None
    user_agent: str | None = None


def calculate_totals(
    items: list[OrderItem],
    tax_rate: float,
    delivery: float = 0,
    discount: float = 0,
) -> OrderTotals:
    """Fill item subtotals in place and return the order totals."""
    subtotal = 0.0
    for item in items:
        item.subtotal = (item.price or item.points_price or 0) * item.quantity
        subtotal += item.subtotal
    tax = round(subtotal * tax_rate, 2)
    return OrderTotals(
        subtotal=subtotal,
        tax=tax,
        delivery=delivery,
        discount=discount,
        total=max(0.0, subtotal + tax + delivery - discount),
    )


def points_earned_for(total: float, method: str) -> int:
    """One point per currency unit spent, none when paying with points."""
    if method == "points":
        return 0
    return int(total)


class Order(Document):
    order_number: Indexed(str, unique=True) = Field(default_factory=generate_order_number)
    customer: OrderCustomer
    items: list[OrderItem] = Field(min_length=1)
    totals: OrderTotals = Field(default_factory=OrderTotals)
    payment: OrderPayment
    status: OrderStatus = "pending"
    order_type: Literal["dine_in", "takeaway", "delivery"]
    timing: OrderTiming = Field(default_factory=OrderTiming)
    delivery: DeliveryInfo | None = None
    staff: OrderStaff = Field(default_factory=OrderStaff)
    notes: OrderNotes = Field(default_factory=OrderNotes)
    points_earned: int = Field(default=0, ge=0)
    feedback: Feedback | None = None
    cancellation: Cancellation | None = None
    metadata: OrderMetadata = Field(default_factory=OrderMetadata)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "orders"
        indexes = [
            [("customer.uid", 1), ("created_at", -1)],
            [("status", 1)],
            [("payment.status", 1)],
            [("created_at", -1)],
        ]

    @before_event(Insert, Replace, Save, SaveChanges)
    def _touch(self) -> None:
        self.updated_at = datetime.utcnow()

    @property
    def items_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def duration_minutes(self) -> int | None:
        if self.timing.completed_at and self.timing.placed_at:
            return round((self.timing.completed_at - self.timing.placed_at).total_seconds() / 60)
        return None

    def set_status(self, status: OrderStatus) -> None:
        self.status = status
        field = STATUS_TIMESTAMPS.get(status)
        if field and getattr(self.timing, field) is None:
            setattr(self.timing, field, datetime.utcnow())

    def to_public_dict(self) -> dict[str, Any]:
        out = self.model_dump(mode="json", exclude={"revision_id"})
        out["id"] = str(self.id) if self.id else None
        out["items_count"] = self.items_count
        out["duration_minutes"] = self.duration_minutes
        return out
