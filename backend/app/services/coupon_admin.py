from __future__ import annotations

import csv
import io
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.coupon import DISCOUNT_PERCENTAGE, DISCOUNT_TYPES, Coupon, CouponUsage
from app.models.order import Order
from app.models.profile import UserProfile
from app.services.coupon_store import as_utc, fits_money_column, normalize_code, to_money, utcnow

logger = logging.getLogger(__name__)

COUPON_STATUSES = ("all", "active", "inactive", "scheduled", "expired", "limit_reached")

EDITABLE_FIELDS = (
    "code",
    "description",
    "discount_type",
    "discount_value",
    "min_purchase_amount",
    "max_discount_amount",
    "usage_limit",
    "usage_limit_per_user",
    "start_date",
    "end_date",
    "is_active",
)

NULLABLE_FIELDS = {
    "description",
    "max_discount_amount",
    "usage_limit",
    "usage_limit_per_user",
    "start_date",
    "end_date",
}


def coupon_status(coupon: Coupon, now: datetime | None = None) -> str:
    now = as_utc(now) or utcnow()
    if not coupon.is_active:
        return "inactive"
    end = as_utc(coupon.end_date)
    if end is not None and now > end:
        return "expired"
    start = as_utc(coupon.start_date)
    if start is not None and now < start:
        return "scheduled"
    if coupon.usage_limit is not None and int(coupon.used_count or 0) >= int(coupon.usage_limit):
        return "limit_reached"
    return "active"


def _apply_status_filter(query, status: str, now: datetime):
    limit_reached = and_(Coupon.usage_limit.isnot(None), Coupon.used_count >= Coupon.usage_limit)
    if status == "inactive":
        return query.filter(Coupon.is_active.is_(False))
    if status == "scheduled":
        return query.filter(Coupon.is_active.is_(True), Coupon.start_date > now)
    if status == "expired":
        return query.filter(Coupon.end_date.isnot(None), Coupon.end_date < now)
    if status == "limit_reached":
        return query.filter(limit_reached)
    if status == "active":
        # Date window only; exhausted coupons still match.
        return query.filter(
            Coupon.is_active.is_(True),
            or_(Coupon.start_date.is_(None), Coupon.start_date <= now),
            or_(Coupon.end_date.is_(None), Coupon.end_date >= now),
        )
    return query


def list_coupons(
    db: Session,
    q: str | None = None,
    status: str = "all",
    limit: int = 50,
    offset: int = 0,
    now: datetime | None = None,
) -> tuple[list[Coupon], int]:
    status = (status or "all").strip().lower()
    if status not in COUPON_STATUSES:
        raise ValueError("invalid_status")
    limit = max(1, min(int(limit or 50), 200))
    offset = max(0, int(offset or 0))
    now = as_utc(now) or utcnow()

    query = db.query(Coupon)
    if q and q.strip():
        q_like = f"%{q.strip()}%"
        query = query.filter(or_(Coupon.code.ilike(q_like), Coupon.description.ilike(q_like)))
    query = _apply_status_filter(query, status, now)
    total = int(query.count() or 0)
    rows = query.order_by(Coupon.created_at.desc(), Coupon.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def get_coupon(db: Session, coupon_id: str) -> Coupon | None:
    return db.query(Coupon).filter(Coupon.id == coupon_id).first()


def _money(value: Any) -> Decimal:
    try:
        amount = to_money(value)
    except InvalidOperation:
        raise ValueError("invalid_amount")
    if not fits_money_column(amount):
        raise ValueError("invalid_amount")
    return amount


def _positive_or_none(value: Any) -> int | None:
    if value is None:
        return None
    value = int(value)
    return value if value > 0 else None


def _clean_fields(data: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in data.items():
        if key not in EDITABLE_FIELDS:
            continue
        if key == "code":
            value = normalize_code(value)
            if not value:
                raise ValueError("invalid_code")
        elif key == "description":
            value = (str(value).strip() if value is not None else "") or None
        elif key == "discount_type":
            if value not in DISCOUNT_TYPES:
                raise ValueError("invalid_discount_type")
        elif key in {"discount_value", "min_purchase_amount"}:
            value = _money(value)
        elif key == "max_discount_amount":
            value = _money(value) if value is not None else None
        elif key in {"usage_limit", "usage_limit_per_user"}:
            value = _positive_or_none(value)
        elif key in {"start_date", "end_date"}:
            value = as_utc(value)
        elif key == "is_active":
            value = bool(value)
        out[key] = value
    return out


def _check_rules(coupon: Coupon) -> None:
    if coupon.discount_type == DISCOUNT_PERCENTAGE and to_money(coupon.discount_value) > Decimal("100"):
        raise ValueError("invalid_discount_value")
    start = as_utc(coupon.start_date)
    end = as_utc(coupon.end_date)
    if start is not None and end is not None and end < start:
        raise ValueError("invalid_date_range")


def _code_taken(db: Session, code: str, exclude_id: str | None = None) -> bool:
    query = db.query(Coupon.id).filter(func.upper(Coupon.code) == code)
    if exclude_id:
        query = query.filter(Coupon.id != exclude_id)
    return query.first() is not None


def create_coupon(db: Session, data: dict[str, Any]) -> Coupon:
    fields = _clean_fields(data)
    if "code" not in fields:
        raise ValueError("invalid_code")
    if _code_taken(db, fields["code"]):
        raise ValueError("coupon_code_exists")
    fields.setdefault("discount_type", DISCOUNT_PERCENTAGE)
    fields.setdefault("discount_value", Decimal("0.00"))
    fields.setdefault("min_purchase_amount", Decimal("0.00"))
    fields.setdefault("is_active", True)

    coupon = Coupon(used_count=0, **fields)
    _check_rules(coupon)
    db.add(coupon)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValueError("coupon_code_exists")
    db.refresh(coupon)
    logger.info("coupons.admin.created coupon_id=%s code=%s", coupon.id, coupon.code)
    return coupon


def update_coupon(db: Session, coupon_id: str, data: dict[str, Any]) -> Coupon | None:
    coupon = get_coupon(db, coupon_id)
    if coupon is None:
        return None
    # Explicit nulls only clear the optional columns.
    data = {k: v for k, v in data.items() if v is not None or k in NULLABLE_FIELDS}
    fields = _clean_fields(data)
    if "code" in fields and _code_taken(db, fields["code"], exclude_id=coupon.id):
        raise ValueError("coupon_code_exists")
    for key, value in fields.items():
        setattr(coupon, key, value)
    try:
        _check_rules(coupon)
    except ValueError:
        db.rollback()
        raise
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValueError("coupon_code_exists")
    db.refresh(coupon)
    logger.info("coupons.admin.updated coupon_id=%s fields=%s", coupon.id, ",".join(sorted(fields)))
    return coupon


def delete_coupon(db: Session, coupon_id: str) -> bool:
    coupon = get_coupon(db, coupon_id)
    if coupon is None:
        return False
    removed = db.query(CouponUsage).filter(CouponUsage.coupon_id == coupon.id).delete(synchronize_session=False)
    db.delete(coupon)
    db.commit()
    logger.info("coupons.admin.deleted coupon_id=%s ledger_rows=%s", coupon_id, removed)
    return True


def get_coupon_usage(db: Session, coupon_id: str) -> list[dict[str, Any]]:
    rows = (
        db.query(CouponUsage, UserProfile.full_name, Order.order_number)
        .outerjoin(UserProfile, UserProfile.id == CouponUsage.user_id)
        .outerjoin(Order, Order.id == CouponUsage.order_id)
        .filter(CouponUsage.coupon_id == coupon_id)
        .order_by(CouponUsage.used_at.desc(), CouponUsage.id.desc())
        .all()
    )
    out: list[dict[str, Any]] = []
    for usage, full_name, order_number in rows:
        out.append(
            {
                "id": usage.id,
                "coupon_id": usage.coupon_id,
                "user_id": usage.user_id,
                "user_name": full_name,
                "order_id": usage.order_id,
                "order_number": order_number,
                "discount_amount": float(to_money(usage.discount_amount)),
                "used_at": as_utc(usage.used_at),
            }
        )
    return out


def coupon_usage_summary(db: Session, coupon: Coupon) -> dict[str, Any]:
    uses, unique_users, total_discount = (
        db.query(
            func.count(CouponUsage.id),
            func.count(func.distinct(CouponUsage.user_id)),
            func.coalesce(func.sum(CouponUsage.discount_amount), 0),
        )
        .filter(CouponUsage.coupon_id == coupon.id)
        .one()
    )
    return {
        "coupon_id": coupon.id,
        "uses": int(uses or 0),
        "unique_users": int(unique_users or 0),
        "total_discount": float(to_money(total_discount or 0)),
        "used_count": int(coupon.used_count or 0),
    }


def reconcile_used_count(db: Session, coupon_id: str) -> tuple[int, int] | None:
    """Administrative reset of ``used_count`` to the ledger row count.

    Returns ``(previous, current)`` or ``None`` when the coupon does not exist.
    """
    coupon = get_coupon(db, coupon_id)
    if coupon is None:
        return None
    previous = int(coupon.used_count or 0)
    ledger_rows = int(
        db.query(func.count(CouponUsage.id)).filter(CouponUsage.coupon_id == coupon.id).scalar() or 0
    )
    if ledger_rows != previous:
        logger.warning(
            "coupons.admin.reconcile_drift coupon_id=%s used_count=%s ledger_rows=%s",
            coupon.id,
            previous,
            ledger_rows,
        )
    coupon.used_count = ledger_rows
    db.commit()
    return previous, ledger_rows


def usage_csv(coupon: Coupon, rows: list[dict[str, Any]]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            "Coupon Code",
            "Order ID",
            "Order Number",
            "User ID",
            "Customer",
            "Discount Amount",
            "Used At",
        ]
    )
    for r in rows:
        used_at = r.get("used_at")
        writer.writerow(
            [
                coupon.code,
                r.get("order_id") or "",
                r.get("order_number") or "",
                r.get("user_id") or "",
                r.get("user_name") or "",
                f"{to_money(r.get('discount_amount') or 0):.2f}",
                used_at.isoformat() if used_at else "",
            ]
        )
    return output.getvalue()
