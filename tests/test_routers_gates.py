"""Role gates and validation on auth, users, products and orders routes (no database needed)."""

import pytest

pytestmark = pytest.mark.asyncio


async def test_verify_without_token(client):
    r = await client.get("/api/auth/verify")
    assert r.status_code == 401


async def test_register_rejects_short_password(client):
    r = await client.post(
        "/api/auth/register",
        json={"email": "a@noircafe.sa", "password": "123", "display_name": "A"},
    )
    assert r.status_code == 400
    assert r.json()["data"]["errors"][0]["field"] == "password"


async def test_refresh_rejects_foreign_signature(client):
    from jose import jwt

    forged = jwt.encode({"sub": "u1", "type": "access"}, "not-our-key", algorithm="HS256")
    r = await client.post("/api/auth/refresh", json={"token": forged})
    assert r.status_code == 401


async def test_me_with_tampered_session_token(client):
    r = await client.get("/api/auth/me", headers={"X-Session-Token": "tampered"})
    assert r.status_code == 401


async def test_user_list_admin_only(client, as_principal):
    as_principal("u1", role="staff")
    r = await client.get("/api/users")
    assert r.status_code == 403


async def test_profile_of_someone_else_forbidden(client, as_principal):
    as_principal("u1")
    r = await client.put("/api/users/profile/u2", json={"display_name": "Hacker"})
    assert r.status_code == 403


async def test_patch_rejects_points_field(client, as_principal):
    as_principal("u1")
    r = await client.patch("/api/users/u1", json={"points": {"current": 1000000}})
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"


async def test_product_create_staff_only(client, as_principal):
    as_principal("u1")
    r = await client.post(
        "/api/products",
        json={"name": "Latte", "description": "Milk", "category": "hot_drinks", "pricing": {"regular": 18, "points": 18}},
    )
    assert r.status_code == 403


async def test_product_rating_bounds(client, as_principal):
    as_principal("u1")
    r = await client.post("/api/products/abc/rating", json={"rating": 6})
    assert r.status_code == 400


async def test_order_requires_items(client, as_principal):
    as_principal("u1")
    r = await client.post("/api/orders", json={"items": [], "order_type": "dine_in", "payment": {"method": "cash"}})
    assert r.status_code == 400


async def test_today_orders_staff_only(client, as_principal):
    as_principal("u1")
    r = await client.get("/api/orders/today")
    assert r.status_code == 403


async def test_order_stats_admin_only(client, as_principal):
    as_principal("u1", role="staff")
    r = await client.get("/api/orders/stats")
    assert r.status_code == 403


async def test_orders_of_someone_else_forbidden(client, as_principal):
    as_principal("u1")
    r = await client.get("/api/orders/user/u2")
    assert r.status_code == 403


async def test_firebase_sign_in_unconfigured_is_401(client, monkeypatch):
    from app.core.config import get_settings
    from app.services import users

    settings = get_settings().model_copy(update={"firebase_project_id": ""})
    monkeypatch.setattr(users, "get_settings", lambda: settings)
    r = await client.post("/api/auth/firebase", json={"id_token": "eyJhbGciOiJSUzI1NiJ9.e30.sig"})
    assert r.status_code == 401
    assert r.json()["code"] == "UNAUTHORIZED"
