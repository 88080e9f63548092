"""Order model"""
from sqlalchemy import Column, Integer, String, DateTime, Numeric, Text, JSON
from datetime import datetime, timezone
from app.models.base import Base


class OrderStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"


class PaymentMethod:
    STRIPE = "stripe"
    PESAPAL = "pesapal"


class Order(Base):
    """One row per checkout attempt, keyed by the provider's session identifier"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(255), unique=True, nullable=False, index=True)
    payment_method = Column(String(32), nullable=False, default=PaymentMethod.STRIPE)
    status = Column(String(32), nullable=False, default=OrderStatus.PENDING, index=True)

    total = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(8), nullable=True)
    client_total = Column(Numeric(12, 2), nullable=True)  # client-declared, diagnostics only

    email = Column(String(255), nullable=True, index=True)
    user_id = Column(String(255), nullable=True, index=True)
    customer_name = Column(String(255), nullable=True)

    # NULL means "no items yet"; an empty list is never stored
    items = Column(JSON(none_as_null=True), nullable=True)

    # Pricing breakdown snapshot taken at session creation
    location = Column(String(255), nullable=True)
    subtotal = Column(Numeric(12, 2), nullable=True)
    shipping = Column(Numeric(12, 2), nullable=True)
    tax = Column(Numeric(12, 2), nullable=True)
    discount_code = Column(String(64), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    tip_amount = Column(Numeric(12, 2), nullable=True)

    error = Column(Text, nullable=True)
    ipn_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        """Serialize for API responses"""
        def money(value):
            return float(value) if value is not None else None

        return {
            "session_id": self.session_id,
            "payment_method": self.payment_method,
            "status": self.status,
            "total": money(self.total),
            "currency": self.currency,
            "email": self.email,
            "user_id": self.user_id,
            "customer_name": self.customer_name,
            "items": list(self.items or []),
            "location": self.location,
            "subtotal": money(self.subtotal),
            "shipping": money(self.shipping),
            "tax": money(self.tax),
            "discount_code": self.discount_code,
            "discount_amount": money(self.discount_amount),
            "tip_amount": money(self.tip_amount),
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }
