import os
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pymongo.errors import PyMongoError

# Use test DB
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "noir_cafe_test")
os.environ.setdefault("MONGODB_TIMEOUT_MS", "1500")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-min-32-characters-long")
os.environ.setdefault("PASSWORD_HASH_ITERATIONS", "1000")


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def as_principal() -> Callable:
    """Override the authenticated caller for router tests that never reach the database."""
    from app.deps import Principal, get_current_principal
    from app.main import app

    def _set(uid: str = "user-1", role: str = "customer", email: str | None = None) -> Principal:
        principal = Principal(uid=uid, email=email or f"{uid}@example.com", display_name=uid, role=role)
        app.dependency_overrides[get_current_principal] = lambda: principal
        return principal

    yield _set
    app.dependency_overrides.pop(get_current_principal, None)


@pytest_asyncio.fixture
async def db():
    """Initialised Beanie on a clean test database; skipped when MongoDB is not reachable."""
    from app.db.init import DOCUMENT_MODELS, get_client, init_db

    client = get_client()
    try:
        await client.admin.command("ping")
    except PyMongoError:
        client.close()
        pytest.skip("MongoDB not reachable")
    await init_db(client)
    for model in DOCUMENT_MODELS:
        await model.delete_all()
    yield client
    client.close()


@pytest.fixture
def make_user(db):
    from app.models.user import PointsBalance, User

    async def _make(uid: str = "u1", current: int = 0, total: int | None = None, used: int = 0, **kwargs) -> User:
        user = User(
            uid=uid,
            email=kwargs.pop("email", f"{uid}@example.com"),
            display_name=kwargs.pop("display_name", uid),
            points=PointsBalance(current=current, total=current if total is None else total, used=used),
            **kwargs,
        )
        await user.insert()
        return user

    return _make


@pytest.fixture
def expired_token() -> Callable[[str], str]:
    """Access token for uid, correctly signed but expired an hour ago."""
    from datetime import datetime, timedelta, timezone

    from jose import jwt

    from app.core.config import get_settings

    def _make(uid: str = "u1") -> str:
        settings = get_settings()
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        claims = {
            "sub": uid,
            "email": f"{uid}@example.com",
            "role": "customer",
            "type": "access",
            "iat": int((past - timedelta(minutes=30)).timestamp()),
            "exp": int(past.timestamp()),
        }
        return jwt.encode(claims, settings.jwt_signing_key, algorithm=settings.jwt_algorithm)

    return _make
