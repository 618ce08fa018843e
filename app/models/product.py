import re
from datetime import datetime
from typing import Literal

from beanie import Document, Insert, Replace, Save, SaveChanges, before_event
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel

ProductCategory = Literal["hot_drinks", "cold_drinks", "desserts", "food", "other"]

STAR_KEYS = {5: "five", 4: "four", 3: "three", 2: "two", 1: "one"}


def slugify(name: str) -> str:
    slug = re.sub(r"[^\w\s-]", "", name.lower()).strip()
    return re.sub(r"\s+", "-", slug)


class Pricing(BaseModel):
    regular: float = Field(ge=0)
    points: int = Field(ge=0)
    cost: float | None = Field(default=None, ge=0)
    currency: Literal["SAR", "USD", "EUR"] = "SAR"


class ProductSize(BaseModel):
    name: str
    name_en: str | None = None
    price: float
    points: int
    volume: str | None = None  # "250ml", "16oz"
    calories: int | None = None


class CustomizationOption(BaseModel):
    name: str
    name_en: str | None = None
    price: float = 0
    points: int = 0


class Customization(BaseModel):
    name: str
    name_en: str | None = None
    type: Literal["single", "multiple"] = "single"
    required: bool = False
    options: list[CustomizationOption] = Field(default_factory=list)


class ProductImage(BaseModel):
    url: str
    alt: str | None = None
    is_primary: bool = False
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)


class Availability(BaseModel):
    is_available: bool = True
    is_seasonal_item: bool = False
    available_from: datetime | None = None
    available_until: datetime | None = None
    max_daily_quantity: int | None = None
    current_daily_sold: int = 0


class Inventory(BaseModel):
    track_inventory: bool = False
    stock_quantity: int = Field(default=0, ge=0)
    low_stock_threshold: int = 10


class RatingBreakdown(BaseModel):
    five: int = 0
    four: int = 0
    three: int = 0
    two: int = 0
    one: int = 0


class Ratings(BaseModel):
    average: float = Field(default=0, ge=0, le=5)
    count: int = 0
    breakdown: RatingBreakdown = Field(default_factory=RatingBreakdown)


class Sales(BaseModel):
    total_sold: int = 0
    total_revenue: float = 0
    last_sold_at: datetime | None = None
    popularity_score: float = 0


class ProductMetadata(BaseModel):
    created_by: str | None = None
    updated_by: str | None = None
    version: int = 1


class Product(Document):
    name: str = Field(min_length=1, max_length=100)
    name_en: str | None = Field(default=None, max_length=100)
    description: str = Field(min_length=1, max_length=500)
    description_en: str | None = Field(default=None, max_length=500)
    category: ProductCategory
    subcategory: str | None = None
    tags: list[str] = Field(default_factory=list)

    pricing: Pricing
    sizes: list[ProductSize] = Field(default_factory=list)
    customizations: list[Customization] = Field(default_factory=list)
    images: list[ProductImage] = Field(default_factory=list)

    availability: Availability = Field(default_factory=Availability)
    inventory: Inventory = Field(default_factory=Inventory)
    ratings: Ratings = Field(default_factory=Ratings)
    sales: Sales = Field(default_factory=Sales)

    slug: str | None = None
    status: Literal["draft", "active", "inactive", "discontinued"] = "active"
    featured: bool = False
    is_new: bool = False
    is_bestseller: bool = False
    sort_order: int = 0
    display_on_menu: bool = True
    metadata: ProductMetadata = Field(default_factory=ProductMetadata)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "products"
        validate_on_save = True
        indexes = [
            [("category", 1), ("status", 1)],
            [("availability.is_available", 1)],
            [("featured", 1)],
            [("ratings.average", -1)],
            [("sales.popularity_score", -1)],
            # null slugs are stored explicitly, so sparse would not exclude them
            IndexModel(
                [("slug", ASCENDING)],
                name="slug_unique",
                unique=True,
                partialFilterExpression={"slug": {"$type": "string"}},
            ),
        ]

    @before_event(Insert, Replace, Save, SaveChanges)
    def _refresh_derived(self) -> None:
        if not self.slug and self.name:
            self.slug = slugify(self.name) or None
        if self.images and not any(img.is_primary for img in self.images):
            self.images[0].is_primary = True
        self.sales.popularity_score = self.sales.total_sold * 0.7 + self.ratings.average * self.ratings.count * 0.3
        self.updated_at = datetime.utcnow()

    @property
    def primary_image(self) -> str | None:
        for img in self.images:
            if img.is_primary:
                return img.url
        return self.images[0].url if self.images else None

    @property
    def is_currently_available(self) -> bool:
        a = self.availability
        if not a.is_available:
            return False
        now = datetime.utcnow()
        if a.available_from and now < a.available_from:
            return False
        if a.available_until and now > a.available_until:
            return False
        if a.max_daily_quantity and a.current_daily_sold >= a.max_daily_quantity:
            return False
        if self.inventory.track_inventory and self.inventory.stock_quantity <= 0:
            return False
        return True

    def apply_rating(self, rating: int) -> None:
        key = STAR_KEYS[rating]
        setattr(self.ratings.breakdown, key, getattr(self.ratings.breakdown, key) + 1)
        count = self.ratings.count + 1
        self.ratings.average = round((self.ratings.average * self.ratings.count + rating) / count, 2)
        self.ratings.count = count

    def apply_sale(self, quantity: int = 1, revenue: float = 0) -> None:
        self.sales.total_sold += quantity
        self.sales.total_revenue += revenue
        self.sales.last_sold_at = datetime.utcnow()
        self.availability.current_daily_sold += quantity
        if self.inventory.track_inventory:
            self.inventory.stock_quantity = max(0, self.inventory.stock_quantity - quantity)

    def to_public_dict(self) -> dict:
        out = self.model_dump(mode="json", exclude={"revision_id"})
        out["id"] = str(self.id) if self.id else None
        out["primary_image"] = self.primary_image
        out["is_currently_available"] = self.is_currently_available
        return out
