from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field

from app.core.envelope import success
from app.core.pagination import page_meta, paginate
from app.deps import Principal, get_current_principal, require_staff
from app.models.product import ProductCategory
from app.services import products as product_service

router = APIRouter()


class PricingIn(BaseModel):
    regular: float = Field(ge=0)
    points: int = Field(ge=0)
    cost: float | None = Field(default=None, ge=0)
    currency: Literal["SAR", "USD", "EUR"] = "SAR"


class ProductCreateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=500)
    category: ProductCategory
    pricing: PricingIn


class ProductUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, min_length=1, max_length=500)
    category: ProductCategory | None = None
    pricing: PricingIn | None = None


class RatingRequest(BaseModel):
    rating: int = Field(ge=1, le=5)


class SaleRequest(BaseModel):
    quantity: int = Field(ge=1)
    revenue: float = Field(ge=0)


@router.get("")
async def list_products(
    category: ProductCategory | None = Query(None),
    featured: bool | None = Query(None),
    available: bool | None = Query(None),
    search: str | None = Query(None, min_length=1, max_length=100),
    sort: Literal["sort_order", "price_low", "price_high", "popular", "rating"] = Query("sort_order"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    page, limit, skip = paginate(page, limit)
    products, total = await product_service.list_products(
        skip,
        limit,
        sort,
        category=category,
        featured=featured,
        available=available,
        search=search,
    )
    return success(
        "Products fetched",
        {
            "products": [p.to_public_dict() for p in products],
            "pagination": page_meta(page, limit, total),
            "filters": {"category": category, "featured": featured, "available": available, "search": search, "sort": sort},
        },
    )


@router.get("/featured")
async def featured(limit: int = Query(6, ge=1, le=50)):
    products = await product_service.featured_products(limit)
    return success("Featured products fetched", {"products": [p.to_public_dict() for p in products]})


@router.get("/bestsellers")
async def bestsellers(limit: int = Query(10, ge=1, le=50)):
    products = await product_service.bestsellers(limit)
    return success("Bestsellers fetched", {"products": [p.to_public_dict() for p in products]})


@router.get("/category/{category}")
async def by_category(category: ProductCategory):
    products = await product_service.by_category(category)
    return success("Products fetched", {"category": category, "products": [p.to_public_dict() for p in products]})


@router.get("/{product_id}")
async def get_product(product_id: str):
    product = await product_service.get_product_or_404(product_id)
    return success("Product fetched", {"product": product.to_public_dict()})


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_product(body: ProductCreateRequest, staff: Principal = Depends(require_staff)):
    product = await product_service.create_product(body.model_dump(), staff.uid)
    return success("Product created", {"product": product.to_public_dict()})


@router.put("/{product_id}")
async def update_product(product_id: str, body: ProductUpdateRequest, staff: Principal = Depends(require_staff)):
    updates: dict[str, Any] = body.model_dump(exclude_unset=True)
    product = await product_service.update_product(product_id, updates, staff.uid)
    return success("Product updated", {"product": product.to_public_dict()})


@router.post("/{product_id}/rating")
async def rate_product(product_id: str, body: RatingRequest, principal: Principal = Depends(get_current_principal)):
    product = await product_service.rate_product(product_id, body.rating)
    return success("Rating added", {"ratings": product.ratings.model_dump()})


@router.post("/{product_id}/sale")
async def record_sale(product_id: str, body: SaleRequest, staff: Principal = Depends(require_staff)):
    product = await product_service.record_sale(product_id, body.quantity, body.revenue)
    return success("Sale recorded", {"sales": product.sales.model_dump(mode="json")})
