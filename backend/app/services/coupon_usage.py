"""Records coupon use once an order has been paid."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.exc import DataError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.services.coupon_store import (
    REASON_DUPLICATE_ORDER,
    REASON_NOT_FOUND,
    as_utc,
    conditional_increment_usage,
    fits_money_column,
    insert_usage_ledger_row,
    to_money,
    utcnow,
)

logger = logging.getLogger(__name__)

REASON_INVALID_ORDER = "invalid_order"
REASON_INVALID_AMOUNT = "invalid_amount"
REASON_ORDER_ALREADY_RECORDED = "order_already_recorded"
REASON_STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class UsageResult:
    ok: bool
    reason: str | None = None
    new_count: int | None = None
    duplicate: bool = False
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            out: dict[str, Any] = {"ok": True, "duplicate": self.duplicate}
            if self.new_count is not None:
                out["new_count"] = self.new_count
            return out
        return {"ok": False, "reason": self.reason, "retryable": self.retryable}


def record_coupon_usage(
    db: Session,
    coupon_id: str,
    user_id: str | None,
    order_id: str,
    discount_amount: Any,
    now: datetime | None = None,
) -> UsageResult:
    """Append a ledger row and bump ``used_count`` in one transaction.

    The ledger insert goes first so a retried order hits the unique
    ``order_id`` constraint before the counter is touched. The increment is
    conditional; if the coupon stopped being usable since checkout the whole
    transaction is rolled back and nothing is recorded. The per-user count is
    taken only after the increment has locked the coupon row, so two orders
    from one user serialise and the later one sees the earlier ledger row.
    Amounts the ``Numeric(12, 2)`` column cannot hold are ``invalid_amount``,
    never a retryable store failure.
    """
    coupon_id = str(coupon_id or "").strip()
    order_id = str(order_id or "").strip()
    user_id = (str(user_id).strip() if user_id else "") or None
    if not coupon_id:
        return UsageResult(ok=False, reason=REASON_NOT_FOUND)
    if not order_id:
        return UsageResult(ok=False, reason=REASON_INVALID_ORDER)
    try:
        amount = to_money(discount_amount)
    except (InvalidOperation, ValueError, TypeError):
        return UsageResult(ok=False, reason=REASON_INVALID_AMOUNT)
    if not fits_money_column(amount) or amount < Decimal("0"):
        return UsageResult(ok=False, reason=REASON_INVALID_AMOUNT)

    now = as_utc(now) or utcnow()
    try:
        inserted = insert_usage_ledger_row(db, coupon_id, user_id, order_id, amount, used_at=now)
        if not inserted.ok:
            if inserted.reason == REASON_DUPLICATE_ORDER:
                if inserted.existing_coupon_id == coupon_id:
                    logger.info("coupons.record_usage.duplicate coupon_id=%s order_id=%s", coupon_id, order_id)
                    return UsageResult(ok=True, duplicate=True)
                logger.warning(
                    "coupons.record_usage.order_conflict coupon_id=%s order_id=%s existing_coupon_id=%s",
                    coupon_id,
                    order_id,
                    inserted.existing_coupon_id,
                )
                return UsageResult(ok=False, reason=REASON_ORDER_ALREADY_RECORDED)
            # Foreign key rejected the row: the coupon is gone.
            return UsageResult(ok=False, reason=REASON_NOT_FOUND)

        increment = conditional_increment_usage(db, coupon_id, user_id=user_id, now=now)
        if not increment.ok:
            db.rollback()
            logger.info(
                "coupons.record_usage.rejected coupon_id=%s order_id=%s reason=%s",
                coupon_id,
                order_id,
                increment.reason,
            )
            return UsageResult(ok=False, reason=increment.reason)
        db.commit()
    except DataError:
        # The store rejected the values themselves; retrying cannot succeed.
        db.rollback()
        logger.warning("coupons.record_usage.data_error coupon_id=%s order_id=%s", coupon_id, order_id)
        return UsageResult(ok=False, reason=REASON_INVALID_AMOUNT)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("coupons.record_usage.store_error coupon_id=%s order_id=%s", coupon_id, order_id)
        return UsageResult(ok=False, reason=REASON_STORE_UNAVAILABLE, retryable=True)

    logger.info(
        "coupons.record_usage.ok coupon_id=%s order_id=%s used_count=%s",
        coupon_id,
        order_id,
        increment.new_count,
    )
    return UsageResult(ok=True, new_count=increment.new_count)
