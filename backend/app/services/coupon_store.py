"""Store access contract for coupons and the coupon usage ledger.

Every function here runs inside the caller's session and never commits; the
validator and recorder own the transaction boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.coupon import Coupon, CouponUsage

CENT = Decimal("0.01")
MAX_MONEY = Decimal("9999999999.99")

REASON_NOT_FOUND = "not_found"
REASON_INACTIVE = "inactive"
REASON_NOT_YET_STARTED = "not_yet_started"
REASON_EXPIRED = "expired"
REASON_LIMIT_REACHED = "limit_reached"
REASON_PER_USER_LIMIT_REACHED = "per_user_limit_reached"
REASON_DUPLICATE_ORDER = "duplicate_order"
REASON_CONSTRAINT_VIOLATION = "constraint_violation"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_code(code: Any) -> str:
    return str(code or "").strip().upper()


def to_money(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value if value is not None else 0))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def fits_money_column(amount: Decimal) -> bool:
    # Numeric(12, 2): ten integer digits.
    return amount.is_finite() and abs(amount) <= MAX_MONEY


def per_user_limit(coupon: Coupon) -> int | None:
    limit = coupon.usage_limit_per_user
    if limit is None or int(limit) <= 0:
        return None
    return int(limit)


@dataclass(frozen=True)
class IncrementResult:
    ok: bool
    new_count: int | None = None
    reason: str | None = None


@dataclass(frozen=True)
class LedgerInsertResult:
    ok: bool
    reason: str | None = None
    existing_coupon_id: str | None = None


def find_coupon_by_code(db: Session, code: str) -> Coupon | None:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return db.query(Coupon).filter(func.upper(Coupon.code) == normalized).first()


def count_usage_by_coupon_and_user(db: Session, coupon_id: str, user_id: str) -> int:
    total = (
        db.query(func.count(CouponUsage.id))
        .filter(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        .scalar()
    )
    return int(total or 0)


def load_coupon_snapshot(db: Session, code: str, user_id: str | None = None) -> tuple[Coupon, int] | None:
    """Fetch the coupon and the caller's ledger count in a single SELECT.

    Returns ``None`` when no coupon matches ``code``. The per-user count is 0
    for anonymous callers.
    """
    normalized = normalize_code(code)
    if not normalized:
        return None
    if not user_id:
        coupon = find_coupon_by_code(db, normalized)
        return (coupon, 0) if coupon is not None else None

    per_user_count = (
        select(func.count(CouponUsage.id))
        .where(CouponUsage.coupon_id == Coupon.id, CouponUsage.user_id == user_id)
        .correlate(Coupon)
        .scalar_subquery()
    )
    row = db.query(Coupon, per_user_count).filter(func.upper(Coupon.code) == normalized).first()
    if row is None:
        return None
    coupon, count = row
    return coupon, int(count or 0)


def insert_usage_ledger_row(
    db: Session,
    coupon_id: str,
    user_id: str | None,
    order_id: str,
    discount_amount: Any,
    used_at: datetime | None = None,
) -> LedgerInsertResult:
    """Flush one ledger row. On a constraint violation the session is rolled back."""
    entry = CouponUsage(
        coupon_id=coupon_id,
        user_id=(user_id or None),
        order_id=order_id,
        discount_amount=to_money(discount_amount),
        used_at=as_utc(used_at) or utcnow(),
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = db.query(CouponUsage.coupon_id).filter(CouponUsage.order_id == order_id).first()
        if existing is None:
            return LedgerInsertResult(ok=False, reason=REASON_CONSTRAINT_VIOLATION)
        return LedgerInsertResult(ok=False, reason=REASON_DUPLICATE_ORDER, existing_coupon_id=existing[0])
    return LedgerInsertResult(ok=True)


def classify_rejection(db: Session, coupon_id: str, now: datetime) -> str:
    coupon = db.query(Coupon).filter(Coupon.id == coupon_id).populate_existing().first()
    if coupon is None:
        return REASON_NOT_FOUND
    if not coupon.is_active:
        return REASON_INACTIVE
    start = as_utc(coupon.start_date)
    if start is not None and now < start:
        return REASON_NOT_YET_STARTED
    end = as_utc(coupon.end_date)
    if end is not None and now > end:
        return REASON_EXPIRED
    return REASON_LIMIT_REACHED


def conditional_increment_usage(
    db: Session,
    coupon_id: str,
    user_id: str | None = None,
    now: datetime | None = None,
    ledger_row_pending: bool = True,
) -> IncrementResult:
    """Increment ``used_count`` by one only while the coupon is still usable.

    The coupon-row rules live in the UPDATE's WHERE clause so the store
    re-evaluates them against the committed row; concurrent callers on the
    same coupon serialise on the row and can never push the counter past
    ``usage_limit``.

    The per-user limit is checked in a separate statement issued after the
    UPDATE, while this transaction holds the coupon row lock. Under read
    committed a new statement sees every ledger row committed by callers that
    held the lock before us; a subquery inside the UPDATE would not be
    re-read when the row lock is granted. With ``ledger_row_pending`` the
    caller's own ledger row is already flushed and is part of that count.

    A failed result can leave the UPDATE applied; the caller must roll back.
    """
    now = as_utc(now) or utcnow()
    updated = (
        db.query(Coupon)
        .filter(Coupon.id == coupon_id)
        .filter(Coupon.is_active.is_(True))
        .filter(or_(Coupon.start_date.is_(None), Coupon.start_date <= now))
        .filter(or_(Coupon.end_date.is_(None), Coupon.end_date >= now))
        .filter(or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit))
        .update(
            {Coupon.used_count: Coupon.used_count + 1, Coupon.updated_at: now},
            synchronize_session=False,
        )
    )
    if not updated:
        return IncrementResult(ok=False, reason=classify_rejection(db, coupon_id, now))

    new_count, user_limit = (
        db.query(Coupon.used_count, Coupon.usage_limit_per_user).filter(Coupon.id == coupon_id).one()
    )
    if user_id and user_limit is not None and int(user_limit) > 0:
        uses = count_usage_by_coupon_and_user(db, coupon_id, user_id)
        allowed = int(user_limit) if ledger_row_pending else int(user_limit) - 1
        if uses > allowed:
            return IncrementResult(ok=False, reason=REASON_PER_USER_LIMIT_REACHED)
    return IncrementResult(ok=True, new_count=int(new_count or 0))
