from app.models.user import User
from app.models.points_transaction import PointsTransaction
from app.models.product import Product
from app.models.order import Order
from app.models.audit_log import AuditLog

__all__ = [
    "User",
    "PointsTransaction",
    "Product",
    "Order",
    "AuditLog",
]
