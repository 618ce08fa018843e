from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from app.core.envelope import success
from app.core.pagination import page_meta, paginate
from app.deps import Principal, ensure_self_or_admin, get_current_principal, request_meta, require_admin
from app.services import ledger
from app.services.packages import CURRENCY, MAX_PACKAGE_POINTS, MIN_PACKAGE_POINTS, list_packages

router = APIRouter()


class PurchaseRequest(BaseModel):
    package_points: int = Field(ge=MIN_PACKAGE_POINTS, le=MAX_PACKAGE_POINTS)
    package_price: float = Field(ge=1)
    payment_method: Literal["card", "cash", "online"]
    payment_details: dict[str, Any] | None = None


class RedeemItem(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    points_price: int = Field(default=0, ge=0)


class RedeemRequest(BaseModel):
    points_to_redeem: int = Field(ge=1)
    items: list[RedeemItem] = Field(min_length=1)
    order_number: str | None = None


class AddPointsRequest(BaseModel):
    user_uid: str = Field(min_length=1)
    points: int = Field(ge=1)
    reason: str = Field(min_length=1)
    source: Literal["purchase", "bonus", "admin", "promotion", "refund"] = "admin"
    admin_note: str | None = None
    related_order: str | None = None


class DeductPointsRequest(BaseModel):
    user_uid: str = Field(min_length=1)
    points: int = Field(ge=1)
    reason: str = Field(min_length=1)
    admin_note: str | None = None


class ReverseRequest(BaseModel):
    reason: str = Field(min_length=1)


@router.get("/packages")
async def points_packages():
    """Public package catalog with bonus and value per point."""
    return success("Packages fetched", {"packages": list_packages(), "currency": CURRENCY})


@router.get("/balance/{uid}")
async def points_balance(uid: str, principal: Principal = Depends(get_current_principal)):
    ensure_self_or_admin(principal, uid, "Not allowed to view this balance")
    return success("Balance fetched", await ledger.get_balance(uid))


@router.post("/purchase")
async def points_purchase(
    body: PurchaseRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
):
    result = await ledger.purchase_package(
        principal.uid,
        body.package_points,
        body.package_price,
        body.payment_method,
        body.payment_details,
        request_meta(request),
    )
    bonus_tx = result["bonus_transaction"]
    return success(
        "Points purchased",
        {
            "purchase_transaction": result["purchase_transaction"].to_public_dict(),
            "bonus_transaction": bonus_tx.to_public_dict() if bonus_tx else None,
            "new_balance": result["user"].balance_dict(),
            "points_added": result["points_added"],
            "bonus_received": result["bonus_received"],
        },
    )


@router.post("/redeem")
async def points_redeem(
    body: RedeemRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
):
    tx, user = await ledger.redeem_points(
        principal.uid,
        body.points_to_redeem,
        [item.model_dump() for item in body.items],
        order_number=body.order_number,
        request_meta=request_meta(request),
    )
    return success(
        "Points redeemed",
        {
            "transaction": tx.to_public_dict(),
            "new_balance": user.balance_dict(),
            "points_used": body.points_to_redeem,
            "remaining_points": user.points.current,
        },
    )


@router.post("/add")
async def points_add(
    body: AddPointsRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
):
    """Credit points. Admins: any user and source. Others: self only, purchase/bonus, capped per call."""
    tx, user = await ledger.admin_add_points(
        principal,
        body.user_uid,
        body.points,
        body.reason,
        source=body.source,
        admin_note=body.admin_note,
        related_order=body.related_order,
        request_meta=request_meta(request),
    )
    return success(
        "Points added",
        {
            "transaction": tx.to_public_dict(),
            "target_user": {"uid": user.uid, "display_name": user.display_name, "new_balance": user.points.current},
            "points_added": body.points,
            "source": body.source,
            "initiated_by": {"uid": principal.uid, "is_admin": principal.is_admin},
        },
    )


@router.post("/deduct")
async def points_deduct(
    body: DeductPointsRequest,
    request: Request,
    admin: Principal = Depends(require_admin),
):
    tx, user = await ledger.admin_deduct_points(
        admin,
        body.user_uid,
        body.points,
        body.reason,
        admin_note=body.admin_note,
        request_meta=request_meta(request),
    )
    return success(
        "Points deducted",
        {
            "transaction": tx.to_public_dict(),
            "target_user": {"uid": user.uid, "display_name": user.display_name, "new_balance": user.points.current},
            "points_deducted": body.points,
            "admin": {"uid": admin.uid, "name": admin.display_name or admin.email},
        },
    )


@router.get("/transactions/{uid}")
async def points_transactions(
    uid: str,
    principal: Principal = Depends(get_current_principal),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: Literal["purchase", "redemption", "bonus", "refund", "adjustment", "expiry"] | None = Query(None),
):
    """Transaction history, newest first."""
    ensure_self_or_admin(principal, uid, "Not allowed to view these transactions")
    page, limit, skip = paginate(page, limit)
    items, total = await ledger.list_transactions(uid, skip, limit, type)
    return success(
        "Transactions fetched",
        {"transactions": [tx.to_public_dict() for tx in items], "pagination": page_meta(page, limit, total)},
    )


@router.get("/stats")
async def points_stats(admin: Principal = Depends(require_admin)):
    return success("Stats fetched", await ledger.points_stats())


@router.post("/transactions/{transaction_id}/reverse")
async def points_reverse(transaction_id: str, body: ReverseRequest, admin: Principal = Depends(require_admin)):
    tx = await ledger.reverse_transaction(admin.uid, transaction_id, body.reason)
    return success("Transaction reversed", {"transaction": tx.to_public_dict()})


@router.post("/transactions/{transaction_id}/retry")
async def points_retry(transaction_id: str, admin: Principal = Depends(require_admin)):
    tx = await ledger.retry_transaction(admin.uid, transaction_id)
    return success("Transaction queued for retry", {"transaction": tx.to_public_dict()})
