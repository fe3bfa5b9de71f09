from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.database import Base
from app.models.coupon import CouponUsage
from app.services.coupon_admin import create_coupon
from app.services.coupon_usage import record_coupon_usage
from app.services.coupon_validator import validate_coupon


def main() -> None:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        now = datetime.now(timezone.utc)
        coupon = create_coupon(
            db,
            {
                "code": "save20",
                "discount_type": "percentage",
                "discount_value": 20,
                "max_discount_amount": 50,
                "usage_limit": 2,
                "usage_limit_per_user": 1,
                "start_date": now - timedelta(days=1),
            },
        )

        res = validate_coupon(db, "SAVE20", "user-1", 1000)
        assert res.valid and res.discount_amount == 50, res

        out = record_coupon_usage(db, coupon.id, "user-1", "order-1", res.discount_amount)
        assert out.ok and out.new_count == 1, out

        again = record_coupon_usage(db, coupon.id, "user-1", "order-1", res.discount_amount)
        assert again.ok and again.duplicate, again

        res2 = validate_coupon(db, "save20", "user-1", 1000)
        assert not res2.valid and res2.error == "per-user limit reached", res2

        out2 = record_coupon_usage(db, coupon.id, "user-2", "order-2", 40)
        assert out2.ok and out2.new_count == 2, out2

        out3 = record_coupon_usage(db, coupon.id, "user-3", "order-3", 40)
        assert not out3.ok and out3.reason == "limit_reached", out3

        rows = db.query(CouponUsage).filter(CouponUsage.coupon_id == coupon.id).count()
        assert rows == 2, rows
    finally:
        db.close()


if __name__ == "__main__":
    main()
    print("OK")
