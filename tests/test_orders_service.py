"""Order flow against a test MongoDB (skipped when none is reachable)."""

from datetime import datetime, timedelta

import pytest

from app.core.exceptions import BadRequestError, ForbiddenError, InsufficientPointsError
from app.deps import Principal

pytestmark = pytest.mark.asyncio

LATTE = {"name": "Latte", "price": 0, "points_price": 40, "quantity": 2, "category": "hot_drinks"}
COOKIE = {"name": "Cookie", "price": 8, "quantity": 1, "category": "desserts"}


def _customer(uid: str = "u1") -> Principal:
    return Principal(uid=uid, email=f"{uid}@example.com", display_name=uid)


async def test_points_order_debits_ledger_and_completes_payment(make_user):
    from app.models.points_transaction import PointsTransaction
    from app.services import orders

    await make_user("u1", current=100)
    order, user = await orders.create_order("u1", [LATTE], "takeaway", {"method": "points"})

    assert order.payment.status == "completed"
    assert order.payment.points_used == 80
    assert order.points_earned == 0
    assert user.points.current == 20
    tx = await PointsTransaction.find_one({"related_order.order_number": order.order_number})
    assert tx.type == "redemption"
    assert tx.points.amount == -80
    assert order.payment.transaction_id == tx.transaction_id


async def test_points_order_with_insufficient_balance_stores_nothing(make_user):
    from app.models.order import Order
    from app.services import orders

    await make_user("u1", current=50)
    with pytest.raises(InsufficientPointsError) as exc:
        await orders.create_order("u1", [LATTE], "dine_in", {"method": "points"})
    assert exc.value.shortage == 30
    assert await Order.find({"customer.uid": "u1"}).count() == 0


async def test_cash_order_earns_points_but_does_not_credit(make_user):
    from app.services import orders

    await make_user("u1", current=5)
    order, user = await orders.create_order("u1", [COOKIE], "dine_in", {"method": "cash"})

    assert order.totals.subtotal == 8
    assert order.totals.tax == 1.2
    assert order.points_earned == 9
    assert order.payment.status == "pending"
    assert user.points.current == 5


async def test_owner_cancel_within_window_refunds_points(make_user):
    from app.services import orders

    await make_user("u1", current=100)
    order, _ = await orders.create_order("u1", [LATTE], "takeaway", {"method": "points"})
    cancelled, refund = await orders.cancel_order(order.order_number, _customer(), "changed my mind")

    assert cancelled.status == "cancelled"
    assert cancelled.timing.cancelled_at is not None
    assert cancelled.cancellation.refund_issued is True
    assert cancelled.payment.status == "refunded"
    assert refund.type == "refund"
    assert refund.points.amount == 80
    from app.models.user import User
    stored = await User.find_one(User.uid == "u1")
    assert stored.points.current == 100


async def test_owner_cannot_cancel_after_window(make_user):
    from app.services import orders

    await make_user("u1")
    order, _ = await orders.create_order("u1", [COOKIE], "dine_in", {"method": "card"})
    order.timing.placed_at = datetime.utcnow() - timedelta(minutes=11)
    await order.save()

    with pytest.raises(BadRequestError):
        await orders.cancel_order(order.order_number, _customer(), "too late")

    admin = Principal(uid="admin-1", email="a@example.com", role="admin")
    cancelled, refund = await orders.cancel_order(order.order_number, admin, "manager override")
    assert cancelled.status == "cancelled"
    assert refund is None


async def test_other_customer_cannot_cancel(make_user):
    from app.services import orders

    await make_user("u1")
    order, _ = await orders.create_order("u1", [COOKIE], "dine_in", {"method": "cash"})
    with pytest.raises(ForbiddenError):
        await orders.cancel_order(order.order_number, _customer("u2"), "nope")


async def test_status_timestamps_and_feedback(make_user):
    from app.services import orders

    await make_user("u1")
    staff = Principal(uid="s1", email="s1@example.com", display_name="Sam", role="staff")
    order, _ = await orders.create_order("u1", [COOKIE], "dine_in", {"method": "cash"})

    with pytest.raises(BadRequestError):
        await orders.add_feedback(order.order_number, "u1", 5, "great")

    await orders.update_status(order.order_number, "preparing", staff, "barista")
    done = await orders.update_status(order.order_number, "completed", staff)
    assert done.timing.preparing_at is not None
    assert done.timing.completed_at is not None
    assert done.staff.barista.id == "s1"

    with pytest.raises(ForbiddenError):
        await orders.add_feedback(order.order_number, "u2", 4)
    reviewed = await orders.add_feedback(order.order_number, "u1", 5, "great")
    assert reviewed.feedback.rating == 5


async def test_status_update_cannot_cancel(make_user):
    from app.services import orders

    await make_user("u1")
    staff = Principal(uid="s1", email="s1@example.com", role="staff")
    order, _ = await orders.create_order("u1", [COOKIE], "dine_in", {"method": "cash"})
    with pytest.raises(BadRequestError):
        await orders.update_status(order.order_number, "cancelled", staff)


async def test_todays_orders_summary(make_user):
    from app.services import orders

    await make_user("u1", current=100)
    await orders.create_order("u1", [COOKIE], "dine_in", {"method": "cash"})
    await orders.create_order("u1", [LATTE], "takeaway", {"method": "points"})

    found, stats, _ = await orders.todays_orders()
    assert len(found) == 2
    assert stats["total_points_used"] == 80
    assert stats["orders_by_type"] == {"dine_in": 1, "takeaway": 1}
