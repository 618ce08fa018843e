"""Points ledger: every balance change is a PointsTransaction followed by a User write.

The write sequence is read-modify-write on a loaded User document with no lock:
the transaction is inserted as pending, the user is saved, then the transaction is
marked completed. Two overlapping calls against the same user can lose one balance
update while both transactions persist.
"""

from datetime import datetime, timedelta
from typing import Any

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ForbiddenError, InsufficientPointsError, NotFoundError
from app.core.logging import get_logger
from app.models.points_transaction import (
    CREDIT_TYPES,
    AdjustmentInfo,
    AdminRef,
    BonusInfo,
    InvalidTransitionError,
    PointsTransaction,
    RedeemedItem,
    RedemptionInfo,
    RelatedOrder,
    RelatedPackage,
    TransactionMetadata,
    TransactionPoints,
    TransactionUser,
)
from app.models.user import User
from app.services.packages import bonus_for_package

logger = get_logger(__name__)

# /points/add "source" -> transaction type
ADD_SOURCE_TYPES = {
    "purchase": "purchase",
    "bonus": "bonus",
    "promotion": "bonus",
    "refund": "refund",
    "admin": "adjustment",
}
SELF_ADD_SOURCES = ("purchase", "bonus")
ISSUED_TYPES = ["purchase", "bonus"]


async def get_user_or_404(uid: str) -> User:
    user = await User.find_one(User.uid == uid)
    if not user:
        raise NotFoundError("User not found")
    return user


async def _apply(user: User, tx_type: str, amount: int, **fields: Any) -> PointsTransaction:
    """
    Record one signed balance change against an already loaded user.
    Positive amounts credit current and total; negative amounts debit current and add to used.
    """
    if amount == 0:
        raise BadRequestError("Amount must be non-zero")
    before = user.points.current
    if amount < 0 and before < -amount:
        raise InsufficientPointsError(required=-amount, available=before)

    tx = PointsTransaction(
        user=TransactionUser(uid=user.uid, name=user.display_name, email=user.email),
        type=tx_type,
        points=TransactionPoints(amount=amount, balance_before=before, balance_after=before + amount),
        **fields,
    )
    await tx.insert()

    if amount > 0:
        user.points.current += amount
        user.points.total += amount
    else:
        user.points.current += amount
        user.points.used += -amount
    try:
        await user.save()
    except Exception as e:
        logger.error(
            "ledger_balance_write_failed",
            uid=user.uid,
            transaction_id=tx.transaction_id,
            amount=amount,
            error=str(e),
        )
        try:
            await tx.mark_failed(str(e))
        except Exception as mark_error:
            logger.error(
                "ledger_mark_failed_failed",
                transaction_id=tx.transaction_id,
                error=str(mark_error),
            )
        raise

    await tx.mark_completed()
    logger.info(
        "points_added" if amount > 0 else "points_deducted",
        uid=user.uid,
        transaction_id=tx.transaction_id,
        type=tx_type,
        amount=amount,
        balance_after=tx.points.balance_after,
        tier=user.loyalty.tier,
    )
    return tx


async def add_points(
    uid: str,
    amount: int,
    tx_type: str = "bonus",
    description: str | None = None,
    **fields: Any,
) -> tuple[PointsTransaction, User]:
    """Credit a user. Raises NotFoundError if the uid is unknown."""
    if amount <= 0:
        raise BadRequestError("Points must be a positive integer")
    if tx_type not in CREDIT_TYPES and tx_type != "adjustment":
        raise BadRequestError(f"Invalid credit type: {tx_type}")
    user = await get_user_or_404(uid)
    tx = await _apply(user, tx_type, amount, description=description, **fields)
    return tx, user


async def deduct_points(
    uid: str,
    amount: int,
    tx_type: str = "redemption",
    description: str | None = None,
    **fields: Any,
) -> tuple[PointsTransaction, User]:
    """Debit a user. Raises InsufficientPointsError before any write when current < amount."""
    if amount <= 0:
        raise BadRequestError("Points must be a positive integer")
    user = await get_user_or_404(uid)
    tx = await _apply(user, tx_type, -amount, description=description, **fields)
    return tx, user


def check_add_permission(actor_uid: str, actor_is_admin: bool, target_uid: str, source: str, amount: int) -> None:
    """Non-admins may only credit themselves, from purchase/bonus, up to the self-add cap."""
    if actor_is_admin:
        return
    if actor_uid != target_uid:
        raise ForbiddenError("Not allowed to add points for this user")
    if source not in SELF_ADD_SOURCES:
        raise ForbiddenError("Points source not allowed")
    cap = get_settings().max_self_add_points
    if amount > cap:
        raise BadRequestError(f"Cannot add more than {cap} points at once")


async def admin_add_points(
    actor: Any,
    target_uid: str,
    amount: int,
    reason: str,
    source: str = "admin",
    admin_note: str | None = None,
    related_order: str | None = None,
    request_meta: dict[str, Any] | None = None,
) -> tuple[PointsTransaction, User]:
    check_add_permission(actor.uid, actor.is_admin, target_uid, source, amount)
    tx_type = ADD_SOURCE_TYPES[source]
    fields: dict[str, Any] = {
        "metadata": TransactionMetadata(source="api", initiated_by=actor.uid, **(request_meta or {})),
    }
    if related_order:
        fields["related_order"] = RelatedOrder(order_number=related_order)
    if source == "promotion":
        fields["bonus"] = BonusInfo(reason="promotion", description=reason)
    if actor.is_admin:
        fields["adjustment"] = AdjustmentInfo(
            reason=reason,
            adjusted_by=AdminRef(admin_uid=actor.uid, admin_name=actor.display_name or actor.email),
            notes=admin_note,
        )
    tx, user = await add_points(target_uid, amount, tx_type, description=reason, **fields)
    if actor.is_admin:
        await log_event(actor.uid, "points_add", "user", target_uid, {"amount": amount, "source": source})
    return tx, user


async def admin_deduct_points(
    actor: Any,
    target_uid: str,
    amount: int,
    reason: str,
    admin_note: str | None = None,
    request_meta: dict[str, Any] | None = None,
) -> tuple[PointsTransaction, User]:
    tx, user = await deduct_points(
        target_uid,
        amount,
        "adjustment",
        description=reason,
        adjustment=AdjustmentInfo(
            reason=reason,
            adjusted_by=AdminRef(admin_uid=actor.uid, admin_name=actor.display_name or actor.email),
            notes=admin_note,
        ),
        metadata=TransactionMetadata(source="admin_panel", initiated_by=actor.uid, **(request_meta or {})),
    )
    await log_event(actor.uid, "points_deduct", "user", target_uid, {"amount": amount, "reason": reason})
    return tx, user


async def purchase_package(
    uid: str,
    package_points: int,
    package_price: float,
    payment_method: str,
    payment_details: dict[str, Any] | None = None,
    request_meta: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Credit the package size, then a separate promotional bonus when the package carries one."""
    user = await get_user_or_404(uid)
    bonus = bonus_for_package(package_points)
    purchase_tx = await _apply(
        user,
        "purchase",
        package_points,
        description=f"Points package {package_points}",
        related_package=RelatedPackage(
            package_size=package_points,
            purchase_price=package_price,
            payment_method=payment_method,
            payment_details=payment_details or {},
        ),
        metadata=TransactionMetadata(initiated_by=uid, **(request_meta or {})),
    )
    bonus_tx = None
    if bonus > 0:
        bonus_tx = await _apply(
            user,
            "bonus",
            bonus,
            description=f"Free points with the {package_points} points package",
            bonus=BonusInfo(
                reason="promotion",
                description=f"Package bonus for {package_points} points",
                promotion_code=f"BONUS_{package_points}",
            ),
            metadata=TransactionMetadata(initiated_by=uid, **(request_meta or {})),
        )
    return {
        "purchase_transaction": purchase_tx,
        "bonus_transaction": bonus_tx,
        "user": user,
        "points_added": package_points + bonus,
        "bonus_received": bonus,
    }


async def redeem_points(
    uid: str,
    points: int,
    items: list[dict[str, Any]],
    order_number: str | None = None,
    order_id: str | None = None,
    order_total: float | None = None,
    request_meta: dict[str, Any] | None = None,
) -> tuple[PointsTransaction, User]:
    if not items:
        raise BadRequestError("At least one item is required")
    redeemed = [
        RedeemedItem(
            product_name=item.get("name") or item.get("product_name") or "item",
            quantity=item.get("quantity") or 1,
            points_value=item.get("points_price") or item.get("points_value") or 0,
        )
        for item in items
    ]
    related = None
    if order_number or order_id:
        related = RelatedOrder(order_id=order_id, order_number=order_number, order_total=order_total)
    return await deduct_points(
        uid,
        points,
        "redemption",
        description=f"Redeemed for order {order_number}" if order_number else "Points redemption",
        redemption=RedemptionInfo(items=redeemed, total_points_used=points),
        related_order=related,
        metadata=TransactionMetadata(initiated_by=uid, **(request_meta or {})),
    )


async def recent_transactions(uid: str, limit: int | None = None) -> list[PointsTransaction]:
    limit = limit or get_settings().recent_transactions_limit
    return (
        await PointsTransaction.find({"user.uid": uid})
        .sort(-PointsTransaction.created_at)
        .limit(limit)
        .to_list()
    )


async def get_balance(uid: str) -> dict[str, Any]:
    user = await get_user_or_404(uid)
    recent = await recent_transactions(uid)
    return {
        "balance": user.balance_dict(),
        "user": {"uid": user.uid, "display_name": user.display_name, "tier": user.loyalty.tier},
        "recent_transactions": [tx.to_public_dict() for tx in recent],
        "next_tier_points": user.points_to_next_tier,
    }


async def list_transactions(uid: str, skip: int, limit: int, tx_type: str | None = None) -> tuple[list[PointsTransaction], int]:
    """Newest first; the total respects the type filter."""
    query: dict[str, Any] = {"user.uid": uid}
    if tx_type:
        query["type"] = tx_type
    finder = PointsTransaction.find(query)
    total = await finder.count()
    items = await PointsTransaction.find(query).sort(-PointsTransaction.created_at).skip(skip).limit(limit).to_list()
    return items, total


def window_match(since: datetime, until: datetime, **extra: Any) -> dict[str, Any]:
    return {"$match": {"status": "completed", "created_at": {"$gte": since, "$lte": until}, **extra}}


def issued_pipeline(since: datetime, until: datetime) -> list[dict[str, Any]]:
    return [
        window_match(since, until, type={"$in": ISSUED_TYPES}),
        {"$group": {"_id": None, "total": {"$sum": "$points.amount"}}},
    ]


def redeemed_pipeline(since: datetime, until: datetime) -> list[dict[str, Any]]:
    return [
        window_match(since, until, type="redemption"),
        {"$group": {"_id": None, "total": {"$sum": {"$abs": "$points.amount"}}}},
    ]


def type_breakdown_pipeline(since: datetime, until: datetime) -> list[dict[str, Any]]:
    return [
        window_match(since, until),
        {
            "$group": {
                "_id": "$type",
                "total_transactions": {"$sum": 1},
                "total_points": {"$sum": "$points.amount"},
                "average_points": {"$avg": "$points.amount"},
                "users": {"$addToSet": "$user.uid"},
            }
        },
        {"$addFields": {"unique_users": {"$size": "$users"}}},
        {"$project": {"users": 0}},
        {"$sort": {"_id": 1}},
    ]


def top_earners_pipeline(since: datetime, until: datetime, limit: int = 5) -> list[dict[str, Any]]:
    return [
        window_match(since, until, type={"$in": ISSUED_TYPES}),
        {
            "$group": {
                "_id": "$user.uid",
                "user_name": {"$first": "$user.name"},
                "total_points": {"$sum": "$points.amount"},
                "transaction_count": {"$sum": 1},
            }
        },
        {"$sort": {"total_points": -1}},
        {"$limit": limit},
    ]


async def _sum(pipeline: list[dict[str, Any]]) -> int:
    rows = await PointsTransaction.aggregate(pipeline).to_list()
    return int(rows[0]["total"]) if rows else 0


async def points_stats(now: datetime | None = None) -> dict[str, Any]:
    settings = get_settings()
    until = now or datetime.utcnow()
    since = until - timedelta(days=settings.stats_window_days)
    total_users = await User.find(User.status == "active").count()
    issued = await _sum(issued_pipeline(since, until))
    redeemed = await _sum(redeemed_pipeline(since, until))
    by_type = await PointsTransaction.aggregate(type_breakdown_pipeline(since, until)).to_list()
    top = await PointsTransaction.aggregate(top_earners_pipeline(since, until)).to_list()
    return {
        "overview": {
            "total_users": total_users,
            "total_points_issued": issued,
            "total_points_redeemed": redeemed,
            "points_in_circulation": issued - redeemed,
        },
        "transaction_stats": [{"type": row.pop("_id"), **row} for row in by_type],
        "top_users": [{"uid": row.pop("_id"), **row} for row in top],
        "period_days": settings.stats_window_days,
    }


async def get_transaction_or_404(transaction_id: str) -> PointsTransaction:
    tx = await PointsTransaction.find_one(PointsTransaction.transaction_id == transaction_id)
    if not tx:
        raise NotFoundError("Transaction not found")
    return tx


async def reverse_transaction(actor_uid: str, transaction_id: str, reason: str) -> PointsTransaction:
    """completed -> reversed. No compensating entry is written and balances are not touched."""
    tx = await get_transaction_or_404(transaction_id)
    try:
        await tx.reverse(reason)
    except InvalidTransitionError as e:
        raise BadRequestError(str(e)) from e
    logger.info("transaction_reversed", transaction_id=transaction_id, actor_uid=actor_uid)
    await log_event(actor_uid, "transaction_reverse", "points_transaction", transaction_id, {"reason": reason})
    return tx


async def retry_transaction(actor_uid: str, transaction_id: str) -> PointsTransaction:
    """failed -> pending, at most max_transaction_retries times."""
    tx = await get_transaction_or_404(transaction_id)
    try:
        await tx.retry(max_retries=get_settings().max_transaction_retries)
    except InvalidTransitionError as e:
        raise BadRequestError(str(e)) from e
    logger.info("transaction_retry", transaction_id=transaction_id, retry_count=tx.processing.retry_count)
    await log_event(actor_uid, "transaction_retry", "points_transaction", transaction_id, {})
    return tx
