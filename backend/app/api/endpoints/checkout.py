from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.auth import require_basic_auth
from app.core.database import get_db
from app.schemas.coupon import RecordCouponUsageRequest, ValidateCouponRequest
from app.services.coupon_usage import record_coupon_usage
from app.services.coupon_validator import validate_coupon


router = APIRouter(dependencies=[Depends(require_basic_auth)])


@router.post("/validate-coupon")
async def validate_coupon_endpoint(body: ValidateCouponRequest, db: Session = Depends(get_db)) -> dict:
    result = validate_coupon(db, body.code, body.user_id, body.cart_total)
    return result.to_dict()


@router.post("/record-coupon-usage")
async def record_coupon_usage_endpoint(body: RecordCouponUsageRequest, db: Session = Depends(get_db)):
    result = record_coupon_usage(db, body.coupon_id, body.user_id, body.order_id, body.discount_amount)
    if result.retryable:
        return JSONResponse(status_code=503, content=result.to_dict())
    return result.to_dict()
