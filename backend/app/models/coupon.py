from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from app.core.database import Base

DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED_AMOUNT = "fixed_amount"
DISCOUNT_TYPES = (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED_AMOUNT)


def _new_id() -> str:
    return str(uuid4())


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String, primary_key=True, index=True, default=_new_id)
    code = Column(String, unique=True, index=True, nullable=False)
    description = Column(Text, nullable=True)
    discount_type = Column(String, nullable=False, default=DISCOUNT_PERCENTAGE)
    discount_value = Column(Numeric(12, 2), nullable=False, default=0)
    min_purchase_amount = Column(Numeric(12, 2), nullable=False, default=0)
    max_discount_amount = Column(Numeric(12, 2), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    usage_limit_per_user = Column(Integer, nullable=True)
    # Only ever changed through the conditional increment or an admin reconcile.
    used_count = Column(Integer, nullable=False, default=0)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CouponUsage(Base):
    __tablename__ = "coupon_usage"

    id = Column(String, primary_key=True, index=True, default=_new_id)
    coupon_id = Column(String, ForeignKey("coupons.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id = Column(String, index=True, nullable=True)
    order_id = Column(String, unique=True, index=True, nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    used_at = Column(DateTime(timezone=True), server_default=func.now())
