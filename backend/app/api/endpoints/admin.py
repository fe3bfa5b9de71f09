from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.security import require_admin
from app.models.coupon import Coupon
from app.schemas.coupon import (
    CouponCreate,
    CouponListResponse,
    CouponResponse,
    CouponUpdate,
    CouponUsageRow,
    CouponUsageSummary,
)
from app.services.coupon_admin import (
    coupon_status,
    coupon_usage_summary,
    create_coupon,
    delete_coupon,
    get_coupon,
    get_coupon_usage,
    list_coupons,
    reconcile_used_count,
    update_coupon,
    usage_csv,
)


router = APIRouter(dependencies=[Depends(require_admin)])

_VALUE_ERRORS: dict[str, tuple[int, str]] = {
    "coupon_code_exists": (409, "Coupon code already exists"),
    "invalid_code": (400, "Invalid code"),
    "invalid_discount_type": (400, "Invalid discount type"),
    "invalid_discount_value": (400, "Percentage discount must be between 0 and 100"),
    "invalid_date_range": (400, "End date must be after start date"),
    "invalid_status": (400, "Invalid status filter"),
    "invalid_amount": (400, "Amount out of range"),
}


def _http_error(exc: ValueError) -> HTTPException:
    status_code, detail = _VALUE_ERRORS.get(str(exc), (400, "Invalid request"))
    return HTTPException(status_code=status_code, detail=detail)


def _coupon_out(coupon: Coupon) -> CouponResponse:
    out = CouponResponse.model_validate(coupon)
    out.status = coupon_status(coupon)
    return out


def _require_coupon(db: Session, coupon_id: str) -> Coupon:
    coupon = get_coupon(db, coupon_id)
    if coupon is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return coupon


@router.get("/admin/coupons", response_model=CouponListResponse)
async def admin_list_coupons(
    q: str | None = None,
    status: str = "all",
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
) -> CouponListResponse:
    try:
        rows, total = list_coupons(db, q=q, status=status, limit=limit, offset=offset)
    except ValueError as exc:
        raise _http_error(exc)
    limit = max(1, min(int(limit or 50), 200))
    offset = max(0, int(offset or 0))
    return CouponListResponse(items=[_coupon_out(c) for c in rows], total=total, limit=limit, offset=offset)


@router.post("/admin/coupons", response_model=CouponResponse, status_code=201)
async def admin_create_coupon(body: CouponCreate, db: Session = Depends(get_db)) -> CouponResponse:
    try:
        coupon = create_coupon(db, body.model_dump())
    except ValueError as exc:
        raise _http_error(exc)
    return _coupon_out(coupon)


@router.get("/admin/coupons/{coupon_id}", response_model=CouponResponse)
async def admin_get_coupon(coupon_id: str, db: Session = Depends(get_db)) -> CouponResponse:
    return _coupon_out(_require_coupon(db, coupon_id))


@router.patch("/admin/coupons/{coupon_id}", response_model=CouponResponse)
async def admin_update_coupon(coupon_id: str, body: CouponUpdate, db: Session = Depends(get_db)) -> CouponResponse:
    try:
        coupon = update_coupon(db, coupon_id, body.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise _http_error(exc)
    if coupon is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return _coupon_out(coupon)


@router.delete("/admin/coupons/{coupon_id}")
async def admin_delete_coupon(coupon_id: str, db: Session = Depends(get_db)) -> dict:
    if not delete_coupon(db, coupon_id):
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"ok": True}


@router.get("/admin/coupons/{coupon_id}/usage", response_model=list[CouponUsageRow])
async def admin_coupon_usage(coupon_id: str, db: Session = Depends(get_db)) -> list[CouponUsageRow]:
    coupon = _require_coupon(db, coupon_id)
    return [CouponUsageRow(**row) for row in get_coupon_usage(db, coupon.id)]


@router.get("/admin/coupons/{coupon_id}/usage.csv")
async def admin_download_coupon_usage_csv(coupon_id: str, db: Session = Depends(get_db)):
    coupon = _require_coupon(db, coupon_id)
    content = usage_csv(coupon, get_coupon_usage(db, coupon.id))
    filename = f"coupon-{coupon.code}-usage.csv"
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename=\"{filename}\""},
    )


@router.get("/admin/coupons/{coupon_id}/summary", response_model=CouponUsageSummary)
async def admin_coupon_summary(coupon_id: str, db: Session = Depends(get_db)) -> CouponUsageSummary:
    coupon = _require_coupon(db, coupon_id)
    return CouponUsageSummary(**coupon_usage_summary(db, coupon))


@router.post("/admin/coupons/{coupon_id}/reconcile")
async def admin_reconcile_coupon(coupon_id: str, db: Session = Depends(get_db)) -> dict:
    result = reconcile_used_count(db, coupon_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    previous, current = result
    return {"ok": True, "previous_used_count": previous, "used_count": current}
