from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


DiscountType = Literal["percentage", "fixed_amount"]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CouponCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    description: Optional[str] = None
    discount_type: DiscountType = "percentage"
    discount_value: Decimal = Field(ge=0)
    min_purchase_amount: Decimal = Field(default=Decimal("0"), ge=0)
    max_discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    usage_limit: Optional[int] = Field(default=None, ge=0)
    usage_limit_per_user: Optional[int] = Field(default=None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True


class CouponUpdate(BaseModel):
    code: Optional[str] = Field(default=None, min_length=1, max_length=64)
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = Field(default=None, ge=0)
    min_purchase_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    usage_limit: Optional[int] = Field(default=None, ge=0)
    usage_limit_per_user: Optional[int] = Field(default=None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


class CouponResponse(BaseModel):
    id: str
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: float
    min_purchase_amount: float
    max_discount_amount: Optional[float] = None
    usage_limit: Optional[int] = None
    usage_limit_per_user: Optional[int] = None
    used_count: int
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("start_date", "end_date", "created_at", "updated_at")
    @classmethod
    def normalize_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc(value)

    class Config:
        from_attributes = True


class CouponListResponse(BaseModel):
    items: list[CouponResponse]
    total: int
    limit: int
    offset: int


class CouponUsageRow(BaseModel):
    id: str
    coupon_id: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    order_id: str
    order_number: Optional[str] = None
    discount_amount: float
    used_at: Optional[datetime] = None

    @field_validator("used_at")
    @classmethod
    def normalize_used_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc(value)


class CouponUsageSummary(BaseModel):
    coupon_id: str
    uses: int
    unique_users: int
    total_discount: float
    used_count: int


class ValidateCouponRequest(BaseModel):
    code: str = ""
    user_id: Optional[str] = Field(default=None, alias="userId")
    cart_total: Decimal = Field(alias="cartTotal")

    class Config:
        populate_by_name = True


class RecordCouponUsageRequest(BaseModel):
    coupon_id: str = Field(alias="couponId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    order_id: str = Field(alias="orderId")
    discount_amount: Decimal = Field(alias="discountAmount")

    class Config:
        populate_by_name = True
