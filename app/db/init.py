import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
from app.models.audit_log import AuditLog
from app.models.order import Order
from app.models.points_transaction import PointsTransaction
from app.models.product import Product
from app.models.user import User

DOCUMENT_MODELS = [
    User,
    PointsTransaction,
    Product,
    Order,
    AuditLog,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def get_client() -> AsyncIOMotorClient:
    settings = get_settings()
    kwargs = {"serverSelectionTimeoutMS": settings.mongodb_timeout_ms}
    # Atlas: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    return AsyncIOMotorClient(settings.mongodb_uri, **kwargs)


async def init_db(client: AsyncIOMotorClient | None = None) -> AsyncIOMotorClient:
    settings = get_settings()
    client = client or get_client()
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return client
