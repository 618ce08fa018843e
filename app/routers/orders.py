from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from app.core.envelope import success
from app.core.pagination import page_meta, paginate
from app.deps import Principal, ensure_self_or_staff, get_current_principal, request_meta, require_admin, require_staff
from app.models.order import OrderStatus
from app.models.product import ProductCategory
from app.services import orders as order_service

router = APIRouter()


class CustomizationIn(BaseModel):
    name: str
    value: str | None = None
    price: float = 0


class OrderItemIn(BaseModel):
    product_id: str | None = None
    name: str = Field(min_length=1)
    name_en: str | None = None
    price: float = Field(default=0, ge=0)
    points_price: int = Field(default=0, ge=0)
    quantity: int = Field(ge=1)
    category: ProductCategory = "other"
    image: str | None = None
    customizations: list[CustomizationIn] = Field(default_factory=list)


class PaymentIn(BaseModel):
    method: Literal["points", "cash", "card", "online", "mixed"]
    points_used: int = Field(default=0, ge=0)
    cash_amount: float = Field(default=0, ge=0)
    gateway: str | None = None


class DeliveryIn(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str = "SA"
    instructions: str | None = None


class NotesIn(BaseModel):
    customer: str | None = Field(default=None, max_length=500)


class CreateOrderRequest(BaseModel):
    items: list[OrderItemIn] = Field(min_length=1)
    order_type: Literal["dine_in", "takeaway", "delivery"]
    payment: PaymentIn
    delivery: DeliveryIn | None = None
    notes: NotesIn | None = None


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    staff_role: Literal["cashier", "barista", "manager"] | None = None


class FeedbackRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: str = Field(default="Cancelled by request", min_length=1, max_length=500)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_order(
    body: CreateOrderRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
):
    """Place an order; points payments are debited through the ledger after the order is stored."""
    order, user = await order_service.create_order(
        principal.uid,
        [item.model_dump() for item in body.items],
        body.order_type,
        body.payment.model_dump(),
        delivery=body.delivery.model_dump() if body.delivery else None,
        notes=body.notes.model_dump() if body.notes else None,
        request_meta=request_meta(request),
    )
    return success("Order created", {"order": order.to_public_dict(), "user_balance": user.balance_dict()})


@router.get("/user/{uid}")
async def user_orders(
    uid: str,
    principal: Principal = Depends(get_current_principal),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: OrderStatus | None = Query(None),
):
    ensure_self_or_staff(principal, uid, "Not allowed to view these orders")
    page, limit, skip = paginate(page, limit)
    orders, total = await order_service.list_user_orders(uid, skip, limit, status)
    return success(
        "Orders fetched",
        {"orders": [o.to_public_dict() for o in orders], "pagination": page_meta(page, limit, total)},
    )


@router.get("")
async def all_orders(
    admin: Principal = Depends(require_admin),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: OrderStatus | None = Query(None),
    order_type: Literal["dine_in", "takeaway", "delivery"] | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
):
    page, limit, skip = paginate(page, limit)
    orders, total, summary = await order_service.list_all_orders(
        skip,
        limit,
        status=status,
        order_type=order_type,
        start_date=start_date,
        end_date=end_date,
    )
    return success(
        "Orders fetched",
        {
            "orders": [o.to_public_dict() for o in orders],
            "pagination": page_meta(page, limit, total),
            "summary": summary,
        },
    )


@router.get("/today")
async def today(staff: Principal = Depends(require_staff)):
    orders, stats, day = await order_service.todays_orders()
    return success("Today's orders fetched", {"orders": [o.to_public_dict() for o in orders], "stats": stats, "date": day})


@router.get("/stats")
async def stats(admin: Principal = Depends(require_admin), period: int = Query(30, ge=1, le=365)):
    return success("Order stats fetched", await order_service.order_stats(period))


@router.get("/{order_number}")
async def get_order(order_number: str, principal: Principal = Depends(get_current_principal)):
    order = await order_service.get_order_or_404(order_number)
    order_service.ensure_owner_or_staff(order, principal)
    return success("Order fetched", {"order": order.to_public_dict()})


@router.put("/{order_number}/status")
async def update_status(order_number: str, body: StatusUpdateRequest, staff: Principal = Depends(require_staff)):
    order = await order_service.update_status(order_number, body.status, staff, body.staff_role)
    return success("Order status updated", {"order": order.to_public_dict()})


@router.post("/{order_number}/feedback")
async def feedback(order_number: str, body: FeedbackRequest, principal: Principal = Depends(get_current_principal)):
    order = await order_service.add_feedback(order_number, principal.uid, body.rating, body.comment)
    return success("Feedback added", {"feedback": order.feedback.model_dump(mode="json")})


@router.post("/{order_number}/cancel")
async def cancel(order_number: str, body: CancelRequest, principal: Principal = Depends(get_current_principal)):
    order, refund_tx = await order_service.cancel_order(order_number, principal, body.reason)
    return success(
        "Order cancelled",
        {
            "order": order.to_public_dict(),
            "refund_transaction": refund_tx.to_public_dict() if refund_tx else None,
        },
    )
