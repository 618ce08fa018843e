"""Orders: creation with optional points payment, staff workflow, feedback, cancellation."""

from datetime import datetime, timedelta
from typing import Any

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ForbiddenError, InsufficientPointsError, NotFoundError
from app.core.logging import get_logger
from app.models.order import (
    Cancellation,
    DeliveryInfo,
    Feedback,
    Order,
    OrderCustomer,
    OrderItem,
    OrderMetadata,
    OrderNotes,
    OrderPayment,
    StaffRef,
    calculate_totals,
    points_earned_for,
)
from app.models.points_transaction import TransactionMetadata
from app.services import ledger

log = get_logger(__name__)

CLOSED_STATUSES = ("completed", "cancelled")


def required_points(payment: OrderPayment, subtotal: float) -> int:
    """Points a payment needs: explicit points_used, else the whole subtotal when paying with points."""
    if payment.points_used > 0:
        return payment.points_used
    if payment.method == "points":
        return int(round(subtotal))
    return 0


async def create_order(
    uid: str,
    items: list[dict[str, Any]],
    order_type: str,
    payment: dict[str, Any],
    delivery: dict[str, Any] | None = None,
    notes: dict[str, Any] | None = None,
    request_meta: dict[str, Any] | None = None,
) -> tuple[Order, Any]:
    user = await ledger.get_user_or_404(uid)
    order_items = [OrderItem.model_validate(item) for item in items]
    totals = calculate_totals(order_items, get_settings().order_tax_rate)
    order_payment = OrderPayment.model_validate({**payment, "status": "pending"})

    points_needed = required_points(order_payment, totals.subtotal)
    if points_needed and user.points.current < points_needed:
        raise InsufficientPointsError(required=points_needed, available=user.points.current)

    order = Order(
        customer=OrderCustomer(uid=user.uid, name=user.display_name, email=user.email, phone=user.profile.phone),
        items=order_items,
        totals=totals,
        payment=order_payment,
        order_type=order_type,
        delivery=DeliveryInfo.model_validate(delivery) if delivery else None,
        notes=OrderNotes.model_validate(notes or {}),
        points_earned=points_earned_for(totals.total, order_payment.method),
        metadata=OrderMetadata(**(request_meta or {})),
    )
    await order.insert()

    if points_needed:
        tx, user = await ledger.redeem_points(
            uid,
            points_needed,
            [item.model_dump() for item in order_items],
            order_number=order.order_number,
            order_id=str(order.id),
            order_total=totals.total,
            request_meta=request_meta,
        )
        order.payment.points_used = points_needed
        order.payment.transaction_id = tx.transaction_id
        order.payment.status = "completed"
        await order.save()

    log.info(
        "order_created",
        order_number=order.order_number,
        uid=uid,
        total=totals.total,
        method=order_payment.method,
        points_used=points_needed,
    )
    return order, user


async def get_order_or_404(order_number: str) -> Order:
    order = await Order.find_one(Order.order_number == order_number)
    if not order:
        raise NotFoundError("Order not found")
    return order


def ensure_owner_or_staff(order: Order, principal: Any) -> None:
    if order.customer.uid != principal.uid and not principal.is_staff:
        raise ForbiddenError("Not allowed to access this order")


async def list_user_orders(uid: str, skip: int, limit: int, status: str | None = None) -> tuple[list[Order], int]:
    query: dict[str, Any] = {"customer.uid": uid}
    if status:
        query["status"] = status
    total = await Order.find(query).count()
    orders = await Order.find(query).sort(-Order.created_at).skip(skip).limit(limit).to_list()
    return orders, total


def build_admin_query(
    status: str | None = None,
    order_type: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> dict[str, Any]:
    query: dict[str, Any] = {}
    if status:
        query["status"] = status
    if order_type:
        query["order_type"] = order_type
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = start_date
        if end_date:
            query["created_at"]["$lte"] = end_date
    return query


def summary_pipeline(match: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        {"$match": match},
        {
            "$group": {
                "_id": None,
                "total_orders": {"$sum": 1},
                "total_revenue": {"$sum": "$totals.total"},
                "total_points_used": {"$sum": "$payment.points_used"},
                "average_order_value": {"$avg": "$totals.total"},
            }
        },
        {"$project": {"_id": 0}},
    ]


async def list_all_orders(skip: int, limit: int, **filters: Any) -> tuple[list[Order], int, dict[str, Any]]:
    query = build_admin_query(**filters)
    total = await Order.find(query).count()
    orders = await Order.find(query).sort(-Order.created_at).skip(skip).limit(limit).to_list()
    rows = await Order.aggregate(summary_pipeline(query)).to_list()
    return orders, total, rows[0] if rows else {}


def summarize_orders(orders: list[Order]) -> dict[str, Any]:
    by_status: dict[str, int] = {}
    by_type: dict[str, int] = {}
    for order in orders:
        by_status[order.status] = by_status.get(order.status, 0) + 1
        by_type[order.order_type] = by_type.get(order.order_type, 0) + 1
    return {
        "total_orders": len(orders),
        "total_revenue": round(sum(o.totals.total for o in orders), 2),
        "total_points_used": sum(o.payment.points_used for o in orders),
        "orders_by_status": by_status,
        "orders_by_type": by_type,
    }


async def todays_orders(now: datetime | None = None) -> tuple[list[Order], dict[str, Any], str]:
    now = now or datetime.utcnow()
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    orders = (
        await Order.find({"created_at": {"$gte": start, "$lt": end}})
        .sort(-Order.created_at)
        .to_list()
    )
    return orders, summarize_orders(orders), start.date().isoformat()


async def order_stats(days: int | None = None) -> dict[str, Any]:
    days = days or get_settings().stats_window_days
    since = datetime.utcnow() - timedelta(days=days)
    match = {"created_at": {"$gte": since}}
    totals = await Order.aggregate(summary_pipeline(match)).to_list()
    daily = await Order.aggregate(
        [
            {"$match": match},
            {
                "$group": {
                    "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}},
                    "orders": {"$sum": 1},
                    "revenue": {"$sum": "$totals.total"},
                    "points_used": {"$sum": "$payment.points_used"},
                }
            },
            {"$sort": {"_id": 1}},
        ]
    ).to_list()
    popular = await Order.aggregate(
        [
            {"$match": match},
            {"$unwind": "$items"},
            {
                "$group": {
                    "_id": "$items.name",
                    "total_ordered": {"$sum": "$items.quantity"},
                    "total_revenue": {"$sum": "$items.subtotal"},
                }
            },
            {"$sort": {"total_ordered": -1}},
            {"$limit": 10},
        ]
    ).to_list()
    customers = await Order.aggregate(
        [
            {"$match": match},
            {"$group": {"_id": "$customer.uid", "orders": {"$sum": 1}, "spent": {"$sum": "$totals.total"}}},
            {
                "$group": {
                    "_id": None,
                    "unique_customers": {"$sum": 1},
                    "average_orders_per_customer": {"$avg": "$orders"},
                    "average_spent_per_customer": {"$avg": "$spent"},
                }
            },
            {"$project": {"_id": 0}},
        ]
    ).to_list()
    return {
        "totals": totals[0] if totals else {},
        "daily": [{"date": row.pop("_id"), **row} for row in daily],
        "popular_items": [{"name": row.pop("_id"), **row} for row in popular],
        "customers": customers[0] if customers else {},
        "period_days": days,
    }


async def update_status(order_number: str, status: str, principal: Any, staff_role: str | None = None) -> Order:
    if status == "cancelled":
        raise BadRequestError("Use the cancel endpoint to cancel an order")
    order = await get_order_or_404(order_number)
    if order.status == "cancelled":
        raise BadRequestError("Cancelled orders cannot be reopened")
    order.set_status(status)
    ref = StaffRef(id=principal.uid, name=principal.display_name)
    role = staff_role or ("manager" if principal.role == "manager" else None)
    if role in ("cashier", "barista", "manager"):
        setattr(order.staff, role, ref)
    await order.save()
    log.info("order_status_updated", order_number=order_number, status=status, actor_uid=principal.uid)
    return order


async def add_feedback(order_number: str, uid: str, rating: int, comment: str | None = None) -> Order:
    order = await get_order_or_404(order_number)
    if order.customer.uid != uid:
        raise ForbiddenError("Not allowed to review this order")
    if order.status != "completed":
        raise BadRequestError("Order must be completed before leaving feedback")
    order.feedback = Feedback(rating=rating, comment=comment)
    await order.save()
    return order


def can_cancel(order: Order, principal: Any, now: datetime | None = None) -> bool:
    """Admins may cancel anything not already cancelled; owners only open orders inside the cancel window."""
    if order.status == "cancelled":
        return False
    if principal.is_admin:
        return True
    if order.customer.uid != principal.uid or order.status in CLOSED_STATUSES:
        return False
    window = timedelta(minutes=get_settings().order_cancel_window_minutes)
    return (now or datetime.utcnow()) - order.timing.placed_at <= window


async def cancel_order(order_number: str, principal: Any, reason: str) -> tuple[Order, Any]:
    """Cancel and refund any points the order consumed as a refund credit."""
    order = await get_order_or_404(order_number)
    if order.customer.uid != principal.uid and not principal.is_admin:
        raise ForbiddenError("Not allowed to cancel this order")
    if not can_cancel(order, principal):
        raise BadRequestError("Order can no longer be cancelled")

    refund_tx = None
    if order.payment.points_used > 0 and order.payment.status == "completed":
        refund_tx, _ = await ledger.add_points(
            order.customer.uid,
            order.payment.points_used,
            "refund",
            description=f"Refund for cancelled order {order.order_number}",
            related_order={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "order_total": order.totals.total,
            },
            metadata=TransactionMetadata(source="cancellation", initiated_by=principal.uid),
        )
        order.payment.status = "refunded"

    order.set_status("cancelled")
    order.cancellation = Cancellation(
        cancelled_by=principal.uid,
        reason=reason,
        refund_issued=refund_tx is not None,
    )
    await order.save()
    log.info(
        "order_cancelled",
        order_number=order_number,
        actor_uid=principal.uid,
        refunded_points=order.payment.points_used if refund_tx else 0,
    )
    return order, refund_tx
