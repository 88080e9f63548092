"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.order import Order, OrderStatus, PaymentMethod

# Export all for convenience
__all__ = ["Base", "Order", "OrderStatus", "PaymentMethod"]
