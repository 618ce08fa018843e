"""Product slug uniqueness."""

import pytest
from pymongo import IndexModel

from app.core.exceptions import ConflictError
from app.models.product import Product

pytestmark = pytest.mark.asyncio

LATTE = {"name": "Spanish Latte", "description": "Condensed milk", "category": "hot_drinks", "pricing": {"regular": 18, "points": 18}}


async def test_slug_unique_index_is_declared():
    slug_indexes = [
        idx.document
        for idx in Product.Settings.indexes
        if isinstance(idx, IndexModel) and list(idx.document["key"].keys()) == ["slug"]
    ]
    assert len(slug_indexes) == 1
    assert slug_indexes[0]["unique"] is True
    assert slug_indexes[0]["partialFilterExpression"] == {"slug": {"$type": "string"}}
    assert "sparse" not in slug_indexes[0]


async def test_duplicate_slug_conflicts(db):
    from app.services import products

    first = await products.create_product(LATTE, "staff-1")
    assert first.slug == "spanish-latte"
    with pytest.raises(ConflictError):
        await products.create_product({**LATTE, "description": "Another one"}, "staff-1")


async def test_products_without_slug_do_not_collide(db):
    await Product(**{**LATTE, "name": "!!!"}).insert()
    await Product(**{**LATTE, "name": "???"}).insert()
    assert await Product.find(Product.slug == None).count() == 2  # noqa: E711
