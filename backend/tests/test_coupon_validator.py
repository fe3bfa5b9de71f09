import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest import mock

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.models.coupon import Coupon
from app.services.coupon_usage import record_coupon_usage
from app.services.coupon_validator import compute_discount, validate_coupon


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestCouponValidator(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(bind=self.engine)
        self.db = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _coupon(self, **fields) -> Coupon:
        values = {
            "code": "SAVE20",
            "discount_type": "percentage",
            "discount_value": Decimal("20"),
            "min_purchase_amount": Decimal("0"),
            "start_date": NOW - timedelta(days=10),
            "end_date": NOW + timedelta(days=10),
            "is_active": True,
            "used_count": 0,
        }
        values.update(fields)
        coupon = Coupon(**values)
        self.db.add(coupon)
        self.db.commit()
        self.db.refresh(coupon)
        return coupon

    def test_percentage_discount_is_capped(self):
        self._coupon(max_discount_amount=Decimal("50"))
        res = validate_coupon(self.db, "SAVE20", None, 1000, now=NOW)
        self.assertTrue(res.valid)
        self.assertEqual(res.discount_amount, Decimal("50.00"))

    def test_percentage_discount_without_cap(self):
        self._coupon()
        res = validate_coupon(self.db, "SAVE20", None, Decimal("99.99"), now=NOW)
        self.assertTrue(res.valid)
        self.assertEqual(res.discount_amount, Decimal("20.00"))

    def test_fixed_discount_never_exceeds_cart_total(self):
        self._coupon(code="FLAT30", discount_type="fixed_amount", discount_value=Decimal("30"))
        res = validate_coupon(self.db, "FLAT30", None, 10, now=NOW)
        self.assertTrue(res.valid)
        self.assertEqual(res.discount_amount, Decimal("10.00"))

    def test_lookup_is_case_insensitive(self):
        coupon = self._coupon()
        res = validate_coupon(self.db, "  save20 ", None, 100, now=NOW)
        self.assertTrue(res.valid)
        self.assertEqual(res.coupon_id, coupon.id)
        self.assertEqual(res.code, "SAVE20")

    def test_unknown_code(self):
        res = validate_coupon(self.db, "NOPE", None, 100, now=NOW)
        self.assertFalse(res.valid)
        self.assertEqual(res.error, "not found")

    def test_blank_code_is_not_found(self):
        res = validate_coupon(self.db, "   ", None, 100, now=NOW)
        self.assertEqual(res.error, "not found")

    def test_inactive(self):
        self._coupon(is_active=False)
        res = validate_coupon(self.db, "SAVE20", None, 100, now=NOW)
        self.assertEqual(res.error, "inactive")

    def test_not_yet_started(self):
        self._coupon(start_date=NOW + timedelta(hours=1))
        res = validate_coupon(self.db, "SAVE20", None, 100, now=NOW)
        self.assertEqual(res.error, "not yet started")

    def test_expired_wins_over_later_checks(self):
        self._coupon(
            end_date=NOW - timedelta(seconds=1),
            min_purchase_amount=Decimal("500"),
            usage_limit=1,
            used_count=1,
        )
        res = validate_coupon(self.db, "SAVE20", "user-1", 10, now=NOW)
        self.assertFalse(res.valid)
        self.assertEqual(res.error, "expired")

    def test_no_end_date_never_expires(self):
        self._coupon(end_date=None)
        res = validate_coupon(self.db, "SAVE20", None, 100, now=NOW + timedelta(days=3650))
        self.assertTrue(res.valid)

    def test_minimum_purchase_surfaces_min_amount(self):
        self._coupon(min_purchase_amount=Decimal("75"))
        res = validate_coupon(self.db, "SAVE20", None, 50, now=NOW)
        self.assertEqual(res.error, "minimum purchase not met")
        self.assertEqual(res.min_amount, Decimal("75.00"))
        self.assertEqual(res.to_dict(), {"valid": False, "error": "minimum purchase not met", "min_amount": 75.0})

    def test_global_usage_limit(self):
        self._coupon(usage_limit=5, used_count=5)
        res = validate_coupon(self.db, "SAVE20", None, 100, now=NOW)
        self.assertEqual(res.error, "usage limit reached")

    def test_per_user_limit(self):
        coupon = self._coupon(usage_limit_per_user=1)

        first = validate_coupon(self.db, "SAVE20", "user-1", 100, now=NOW)
        self.assertTrue(first.valid)
        recorded = record_coupon_usage(self.db, coupon.id, "user-1", "order-1", first.discount_amount, now=NOW)
        self.assertTrue(recorded.ok)

        second = validate_coupon(self.db, "SAVE20", "user-1", 100, now=NOW)
        self.assertFalse(second.valid)
        self.assertEqual(second.error, "per-user limit reached")

        other = validate_coupon(self.db, "SAVE20", "user-2", 100, now=NOW)
        self.assertTrue(other.valid)

        anonymous = validate_coupon(self.db, "SAVE20", None, 100, now=NOW)
        self.assertTrue(anonymous.valid)

    def test_zero_per_user_limit_means_unlimited(self):
        coupon = self._coupon(usage_limit_per_user=0)
        record_coupon_usage(self.db, coupon.id, "user-1", "order-1", 20, now=NOW)
        res = validate_coupon(self.db, "SAVE20", "user-1", 100, now=NOW)
        self.assertTrue(res.valid)

    def test_negative_cart_total(self):
        self._coupon()
        res = validate_coupon(self.db, "SAVE20", None, -1, now=NOW)
        self.assertEqual(res.error, "invalid cart total")

    def test_valid_result_shape(self):
        coupon = self._coupon(description="Summer sale")
        res = validate_coupon(self.db, "SAVE20", None, 200, now=NOW)
        self.assertEqual(
            res.to_dict(),
            {
                "valid": True,
                "coupon_id": coupon.id,
                "code": "SAVE20",
                "discount_type": "percentage",
                "discount_value": 20.0,
                "discount_amount": 40.0,
                "description": "Summer sale",
            },
        )

    def test_store_failure_collapses_to_validation_failed(self):
        db = mock.MagicMock()
        db.query.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
        with self.assertLogs("app.services.coupon_validator", level="ERROR"):
            res = validate_coupon(db, "SAVE20", "user-1", 100, now=NOW)
        self.assertFalse(res.valid)
        self.assertTrue(res.retryable)
        self.assertEqual(res.to_dict(), {"valid": False, "error": "validation failed"})
        db.rollback.assert_called_once()

    def test_compute_discount_rounds_to_cents(self):
        coupon = Coupon(discount_type="percentage", discount_value=Decimal("12.5"))
        self.assertEqual(compute_discount(coupon, Decimal("19.99")), Decimal("2.50"))

    def test_compute_discount_rejects_unknown_type(self):
        coupon = Coupon(discount_type="bogo", discount_value=Decimal("1"))
        with self.assertRaises(ValueError):
            compute_discount(coupon, Decimal("10"))


if __name__ == "__main__":
    unittest.main()
