"""Product catalog queries and staff mutations."""

import re
from typing import Any

from beanie import PydanticObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.models.product import Product

log = get_logger(__name__)

SORTS: dict[str, list[tuple[str, int]]] = {
    "sort_order": [("sort_order", 1)],
    "price_low": [("pricing.regular", 1)],
    "price_high": [("pricing.regular", -1)],
    "popular": [("sales.popularity_score", -1)],
    "rating": [("ratings.average", -1)],
}
SEARCH_FIELDS = ("name", "name_en", "description", "tags")
PROTECTED_FIELDS = ("id", "revision_id", "metadata", "created_at", "updated_at")


def build_product_query(
    category: str | None = None,
    featured: bool | None = None,
    available: bool | None = None,
    search: str | None = None,
) -> dict[str, Any]:
    """Mongo filter for the public catalog; only active products are listed."""
    query: dict[str, Any] = {"status": "active"}
    if category:
        query["category"] = category
    if featured:
        query["featured"] = True
    if available:
        query["availability.is_available"] = True
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{field: pattern} for field in SEARCH_FIELDS]
    return query


async def list_products(
    skip: int,
    limit: int,
    sort: str = "sort_order",
    **filters: Any,
) -> tuple[list[Product], int]:
    query = build_product_query(**filters)
    total = await Product.find(query).count()
    products = (
        await Product.find(query)
        .sort(SORTS.get(sort, SORTS["sort_order"]))
        .skip(skip)
        .limit(limit)
        .to_list()
    )
    return products, total


async def featured_products(limit: int = 6) -> list[Product]:
    return (
        await Product.find({"status": "active", "featured": True, "availability.is_available": True})
        .sort([("sort_order", 1), ("sales.popularity_score", -1)])
        .limit(limit)
        .to_list()
    )


async def bestsellers(limit: int = 10) -> list[Product]:
    return (
        await Product.find({"status": "active", "availability.is_available": True})
        .sort([("sales.total_sold", -1)])
        .limit(limit)
        .to_list()
    )


async def by_category(category: str, limit: int = 50) -> list[Product]:
    return (
        await Product.find({"status": "active", "category": category})
        .sort(SORTS["sort_order"])
        .limit(limit)
        .to_list()
    )


async def get_product_or_404(product_id: str) -> Product:
    product = None
    if PydanticObjectId.is_valid(product_id):
        product = await Product.get(PydanticObjectId(product_id))
    if not product:
        raise NotFoundError("Product not found")
    return product


async def create_product(data: dict[str, Any], actor_uid: str) -> Product:
    try:
        product = Product.model_validate({**data, "metadata": {"created_by": actor_uid, "version": 1}})
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e, "Invalid product data") from e
    try:
        await product.insert()
    except DuplicateKeyError as e:
        raise ConflictError(f"Product slug already exists: {product.slug}") from e
    log.info("product_created", product_id=str(product.id), slug=product.slug, actor_uid=actor_uid)
    return product


async def update_product(product_id: str, updates: dict[str, Any], actor_uid: str) -> Product:
    product = await get_product_or_404(product_id)
    updates = {k: v for k, v in updates.items() if k in Product.model_fields and k not in PROTECTED_FIELDS}
    merged = {**product.model_dump(exclude={"id", "revision_id", "metadata"}), **updates}
    try:
        updated = Product.model_validate(merged)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e, "Invalid product data") from e
    for field in updates:
        setattr(product, field, getattr(updated, field))
    product.metadata.updated_by = actor_uid
    product.metadata.version += 1
    await product.save()
    log.info("product_updated", product_id=product_id, fields=sorted(updates), version=product.metadata.version)
    return product


async def rate_product(product_id: str, rating: int) -> Product:
    product = await get_product_or_404(product_id)
    product.apply_rating(rating)
    await product.save()
    return product


async def record_sale(product_id: str, quantity: int, revenue: float) -> Product:
    product = await get_product_or_404(product_id)
    product.apply_sale(quantity, revenue)
    await product.save()
    log.info("product_sale", product_id=product_id, quantity=quantity, revenue=revenue)
    return product
