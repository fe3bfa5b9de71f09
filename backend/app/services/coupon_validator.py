"""Checkout-time coupon validation and discount computation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.coupon import DISCOUNT_FIXED_AMOUNT, DISCOUNT_PERCENTAGE, Coupon
from app.services.coupon_store import (
    as_utc,
    load_coupon_snapshot,
    normalize_code,
    per_user_limit,
    to_money,
    utcnow,
)

logger = logging.getLogger(__name__)

ERROR_NOT_FOUND = "not found"
ERROR_INACTIVE = "inactive"
ERROR_NOT_YET_STARTED = "not yet started"
ERROR_EXPIRED = "expired"
ERROR_MIN_PURCHASE = "minimum purchase not met"
ERROR_USAGE_LIMIT = "usage limit reached"
ERROR_PER_USER_LIMIT = "per-user limit reached"
ERROR_INVALID_CART_TOTAL = "invalid cart total"
ERROR_INVALID_DISCOUNT_TYPE = "invalid discount type"
ERROR_VALIDATION_FAILED = "validation failed"

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: str | None = None
    min_amount: Decimal | None = None
    coupon_id: str | None = None
    code: str | None = None
    discount_type: str | None = None
    discount_value: Decimal | None = None
    discount_amount: Decimal | None = None
    description: str | None = None
    # Store failures only; business rejections are final for this request.
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        if not self.valid:
            out: dict[str, Any] = {"valid": False, "error": self.error}
            if self.min_amount is not None:
                out["min_amount"] = float(self.min_amount)
            return out
        return {
            "valid": True,
            "coupon_id": self.coupon_id,
            "code": self.code,
            "discount_type": self.discount_type,
            "discount_value": float(self.discount_value if self.discount_value is not None else ZERO),
            "discount_amount": float(self.discount_amount if self.discount_amount is not None else ZERO),
            "description": self.description,
        }


def compute_discount(coupon: Coupon, cart_total: Decimal) -> Decimal:
    value = to_money(coupon.discount_value)
    if coupon.discount_type == DISCOUNT_PERCENTAGE:
        amount = to_money(cart_total * value / Decimal(100))
        if coupon.max_discount_amount is not None:
            amount = min(amount, to_money(coupon.max_discount_amount))
    elif coupon.discount_type == DISCOUNT_FIXED_AMOUNT:
        amount = value
    else:
        raise ValueError("invalid_discount_type")
    return max(ZERO, min(amount, cart_total))


def _reject(error: str, code: str, **extra: Any) -> ValidationResult:
    logger.info("coupons.validate.rejected code=%s reason=%s", code, error)
    return ValidationResult(valid=False, error=error, **extra)


def validate_coupon(
    db: Session,
    code: str,
    user_id: str | None,
    cart_total: Any,
    now: datetime | None = None,
) -> ValidationResult:
    normalized = normalize_code(code)
    if not normalized:
        return _reject(ERROR_NOT_FOUND, normalized)
    try:
        total = to_money(cart_total)
    except (InvalidOperation, ValueError, TypeError):
        return _reject(ERROR_INVALID_CART_TOTAL, normalized)
    if total < ZERO:
        return _reject(ERROR_INVALID_CART_TOTAL, normalized)

    now = as_utc(now) or utcnow()
    user_id = (str(user_id).strip() if user_id else "") or None

    try:
        snapshot = load_coupon_snapshot(db, normalized, user_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("coupons.validate.store_error code=%s user_id=%s", normalized, user_id)
        return ValidationResult(valid=False, error=ERROR_VALIDATION_FAILED, retryable=True)

    if snapshot is None:
        return _reject(ERROR_NOT_FOUND, normalized)
    coupon, user_uses = snapshot

    if not coupon.is_active:
        return _reject(ERROR_INACTIVE, normalized)

    start = as_utc(coupon.start_date)
    if start is not None and now < start:
        return _reject(ERROR_NOT_YET_STARTED, normalized)
    end = as_utc(coupon.end_date)
    if end is not None and now > end:
        return _reject(ERROR_EXPIRED, normalized)

    min_amount = to_money(coupon.min_purchase_amount)
    if total < min_amount:
        return _reject(ERROR_MIN_PURCHASE, normalized, min_amount=min_amount)

    if coupon.usage_limit is not None and int(coupon.used_count or 0) >= int(coupon.usage_limit):
        return _reject(ERROR_USAGE_LIMIT, normalized)

    user_limit = per_user_limit(coupon)
    if user_id and user_limit is not None and user_uses >= user_limit:
        return _reject(ERROR_PER_USER_LIMIT, normalized)

    try:
        discount = compute_discount(coupon, total)
    except ValueError:
        logger.warning("coupons.validate.bad_discount_type coupon_id=%s type=%s", coupon.id, coupon.discount_type)
        return _reject(ERROR_INVALID_DISCOUNT_TYPE, normalized)

    return ValidationResult(
        valid=True,
        coupon_id=coupon.id,
        code=coupon.code,
        discount_type=coupon.discount_type,
        discount_value=to_money(coupon.discount_value),
        discount_amount=discount,
        description=coupon.description,
    )
