from sqlalchemy import Column, DateTime, Numeric, String
from sqlalchemy.sql import func

from app.core.database import Base


class Order(Base):
    """Storefront order. Owned by the checkout flow."""

    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    order_number = Column(String, unique=True, index=True, nullable=True)
    user_id = Column(String, index=True, nullable=True)
    total = Column(Numeric(12, 2), nullable=True)
    coupon_code = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
