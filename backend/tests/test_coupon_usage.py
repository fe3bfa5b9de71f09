import os
import shutil
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest import mock

from sqlalchemy import create_engine, event
from sqlalchemy.exc import DataError, OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.models.coupon import Coupon, CouponUsage
from app.services.coupon_store import conditional_increment_usage, count_usage_by_coupon_and_user
from app.services.coupon_usage import record_coupon_usage


def _add_coupon(db, **fields) -> str:
    values = {
        "code": "ORDER10",
        "discount_type": "fixed_amount",
        "discount_value": Decimal("10"),
        "min_purchase_amount": Decimal("0"),
        "is_active": True,
        "used_count": 0,
    }
    values.update(fields)
    coupon = Coupon(**values)
    db.add(coupon)
    db.commit()
    return coupon.id


class TestRecordCouponUsage(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(bind=self.engine)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.db = self.SessionLocal()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _used_count(self, coupon_id: str) -> int:
        with self.SessionLocal() as db:
            return db.query(Coupon.used_count).filter(Coupon.id == coupon_id).scalar()

    def _ledger_rows(self, coupon_id: str) -> int:
        with self.SessionLocal() as db:
            return db.query(CouponUsage).filter(CouponUsage.coupon_id == coupon_id).count()

    def test_records_row_and_increments(self):
        coupon_id = _add_coupon(self.db)
        res = record_coupon_usage(self.db, coupon_id, "user-1", "order-1", Decimal("7.35"))
        self.assertTrue(res.ok)
        self.assertEqual(res.new_count, 1)
        self.assertFalse(res.duplicate)
        self.assertEqual(self._used_count(coupon_id), 1)

        with self.SessionLocal() as db:
            row = db.query(CouponUsage).filter(CouponUsage.order_id == "order-1").one()
            self.assertEqual(row.coupon_id, coupon_id)
            self.assertEqual(row.user_id, "user-1")
            self.assertEqual(row.discount_amount, Decimal("7.35"))

    def test_anonymous_checkout(self):
        coupon_id = _add_coupon(self.db, usage_limit_per_user=1)
        self.assertTrue(record_coupon_usage(self.db, coupon_id, None, "order-1", 10).ok)
        self.assertTrue(record_coupon_usage(self.db, coupon_id, None, "order-2", 10).ok)
        self.assertEqual(self._used_count(coupon_id), 2)

    def test_same_order_twice_is_a_noop(self):
        coupon_id = _add_coupon(self.db)
        first = record_coupon_usage(self.db, coupon_id, "user-1", "order-1", 10)
        second = record_coupon_usage(self.db, coupon_id, "user-1", "order-1", 10)
        self.assertTrue(first.ok)
        self.assertTrue(second.ok)
        self.assertTrue(second.duplicate)
        self.assertEqual(self._used_count(coupon_id), 1)
        self.assertEqual(self._ledger_rows(coupon_id), 1)

    def test_retry_after_last_slot_is_still_a_noop(self):
        coupon_id = _add_coupon(self.db, usage_limit=1)
        self.assertTrue(record_coupon_usage(self.db, coupon_id, "user-1", "order-1", 10).ok)
        retry = record_coupon_usage(self.db, coupon_id, "user-1", "order-1", 10)
        self.assertTrue(retry.ok)
        self.assertTrue(retry.duplicate)
        self.assertEqual(self._used_count(coupon_id), 1)

    def test_order_already_recorded_for_another_coupon(self):
        first_id = _add_coupon(self.db, code="FIRST")
        second_id = _add_coupon(self.db, code="SECOND")
        self.assertTrue(record_coupon_usage(self.db, first_id, None, "order-1", 10).ok)
        res = record_coupon_usage(self.db, second_id, None, "order-1", 10)
        self.assertFalse(res.ok)
        self.assertEqual(res.reason, "order_already_recorded")
        self.assertEqual(self._used_count(second_id), 0)

    def test_limit_reached_records_nothing(self):
        coupon_id = _add_coupon(self.db, usage_limit=2)
        self.assertTrue(record_coupon_usage(self.db, coupon_id, "a", "order-1", 10).ok)
        self.assertTrue(record_coupon_usage(self.db, coupon_id, "b", "order-2", 10).ok)
        res = record_coupon_usage(self.db, coupon_id, "c", "order-3", 10)
        self.assertFalse(res.ok)
        self.assertEqual(res.reason, "limit_reached")
        self.assertFalse(res.retryable)
        self.assertEqual(self._used_count(coupon_id), 2)
        self.assertEqual(self._ledger_rows(coupon_id), 2)

    def test_per_user_limit_enforced_at_record_time(self):
        coupon_id = _add_coupon(self.db, usage_limit_per_user=1)
        self.assertTrue(record_coupon_usage(self.db, coupon_id, "user-1", "order-1", 10).ok)
        res = record_coupon_usage(self.db, coupon_id, "user-1", "order-2", 10)
        self.assertFalse(res.ok)
        self.assertEqual(res.reason, "per_user_limit_reached")
        self.assertEqual(count_usage_by_coupon_and_user(self.db, coupon_id, "user-1"), 1)
        self.assertTrue(record_coupon_usage(self.db, coupon_id, "user-2", "order-3", 10).ok)

    def test_coupon_expired_between_checkout_and_payment(self):
        now = datetime.now(timezone.utc)
        coupon_id = _add_coupon(self.db, end_date=now - timedelta(minutes=1))
        res = record_coupon_usage(self.db, coupon_id, "user-1", "order-1", 10)
        self.assertFalse(res.ok)
        self.assertEqual(res.reason, "expired")
        self.assertEqual(self._ledger_rows(coupon_id), 0)

    def test_deactivated_coupon(self):
        coupon_id = _add_coupon(self.db, is_active=False)
        res = record_coupon_usage(self.db, coupon_id, None, "order-1", 10)
        self.assertEqual(res.reason, "inactive")
        self.assertEqual(self._ledger_rows(coupon_id), 0)

    def test_unknown_coupon(self):
        res = record_coupon_usage(self.db, "missing", None, "order-1", 10)
        self.assertFalse(res.ok)
        self.assertEqual(res.reason, "not_found")
        with self.SessionLocal() as db:
            self.assertEqual(db.query(CouponUsage).count(), 0)

    def test_rejects_bad_input(self):
        coupon_id = _add_coupon(self.db)
        self.assertEqual(record_coupon_usage(self.db, coupon_id, None, "order-1", -1).reason, "invalid_amount")
        self.assertEqual(record_coupon_usage(self.db, coupon_id, None, "order-1", "abc").reason, "invalid_amount")
        self.assertEqual(record_coupon_usage(self.db, coupon_id, None, "  ", 5).reason, "invalid_order")

    def test_store_failure_is_retryable(self):
        db = mock.MagicMock()
        db.flush.side_effect = OperationalError("INSERT", {}, Exception("server closed the connection"))
        with self.assertLogs("app.services.coupon_usage", level="ERROR"):
            res = record_coupon_usage(db, "coupon-1", "user-1", "order-1", 10)
        self.assertFalse(res.ok)
        self.assertEqual(res.reason, "store_unavailable")
        self.assertTrue(res.retryable)
        self.assertEqual(res.to_dict(), {"ok": False, "reason": "store_unavailable", "retryable": True})
        db.commit.assert_not_called()

    def test_per_user_count_is_read_after_the_coupon_row_update(self):
        coupon_id = _add_coupon(self.db, usage_limit_per_user=1)
        statements = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            statements.append(" ".join(statement.split()).lower())

        event.listen(self.engine, "before_cursor_execute", capture)
        try:
            self.assertTrue(record_coupon_usage(self.db, coupon_id, "user-1", "order-1", 10).ok)
        finally:
            event.remove(self.engine, "before_cursor_execute", capture)

        updates = [i for i, s in enumerate(statements) if s.startswith("update coupons")]
        self.assertEqual(len(updates), 1)
        self.assertNotIn("coupon_usage", statements[updates[0]])
        counts = [
            i for i, s in enumerate(statements)
            if s.startswith("select count(") and "from coupon_usage" in s
        ]
        self.assertTrue(counts)
        self.assertGreater(counts[0], updates[0])

    def test_per_user_limit_sees_rows_committed_elsewhere(self):
        coupon_id = _add_coupon(self.db, usage_limit_per_user=1)
        with self.SessionLocal() as other:
            other.add(CouponUsage(coupon_id=coupon_id, user_id="user-1", order_id="order-1", discount_amount=10))
            other.commit()

        res = record_coupon_usage(self.db, coupon_id, "user-1", "order-2", 10)
        self.assertFalse(res.ok)
        self.assertEqual(res.reason, "per_user_limit_reached")
        self.assertEqual(self._used_count(coupon_id), 0)
        self.assertEqual(self._ledger_rows(coupon_id), 1)

    def test_amount_outside_column_precision(self):
        coupon_id = _add_coupon(self.db)
        for amount in (10 ** 10, Decimal("NaN"), "Infinity"):
            res = record_coupon_usage(self.db, coupon_id, None, "order-1", amount)
            self.assertEqual(res.reason, "invalid_amount", amount)
            self.assertFalse(res.retryable)
        self.assertTrue(record_coupon_usage(self.db, coupon_id, None, "order-1", Decimal("9999999999.99")).ok)

    def test_store_data_error_is_final(self):
        db = mock.MagicMock()
        db.flush.side_effect = DataError("INSERT", {}, Exception("numeric field overflow"))
        res = record_coupon_usage(db, "coupon-1", "user-1", "order-1", 10)
        self.assertFalse(res.ok)
        self.assertEqual(res.reason, "invalid_amount")
        self.assertFalse(res.retryable)
        db.rollback.assert_called_once()
        db.commit.assert_not_called()

    def test_conditional_increment_without_ledger_row(self):
        coupon_id = _add_coupon(self.db, usage_limit=1)
        first = conditional_increment_usage(self.db, coupon_id, ledger_row_pending=False)
        self.db.commit()
        second = conditional_increment_usage(self.db, coupon_id, ledger_row_pending=False)
        self.db.rollback()
        self.assertTrue(first.ok)
        self.assertEqual(first.new_count, 1)
        self.assertFalse(second.ok)
        self.assertEqual(second.reason, "limit_reached")


class TestConcurrentRecording(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        path = os.path.join(self.tmpdir, "coupons.db")
        self.engine = create_engine(
            f"sqlite:///{path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=self.engine)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_used_count_never_exceeds_limit(self):
        limit = 3
        attempts = 8
        with self.SessionLocal() as db:
            coupon_id = _add_coupon(db, usage_limit=limit)

        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(attempts)

        def worker(i: int) -> None:
            db = self.SessionLocal()
            try:
                barrier.wait()
                res = record_coupon_usage(db, coupon_id, f"user-{i}", f"order-{i}", 10)
            finally:
                db.close()
            with results_lock:
                results.append(res)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(attempts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        ok = [r for r in results if r.ok]
        rejected = [r for r in results if not r.ok]
        self.assertEqual(len(results), attempts)
        self.assertEqual(len(ok), min(limit, attempts))
        self.assertTrue(all(r.reason == "limit_reached" for r in rejected), [r.reason for r in rejected])
        self.assertEqual(sorted(r.new_count for r in ok), [1, 2, 3])

        with self.SessionLocal() as db:
            used = db.query(Coupon.used_count).filter(Coupon.id == coupon_id).scalar()
            rows = db.query(CouponUsage).filter(CouponUsage.coupon_id == coupon_id).count()
        self.assertEqual(used, limit)
        self.assertEqual(rows, limit)

    def test_same_user_never_exceeds_per_user_limit(self):
        per_user = 2
        attempts = 6
        with self.SessionLocal() as db:
            coupon_id = _add_coupon(db, usage_limit_per_user=per_user)

        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(attempts)

        def worker(i: int) -> None:
            db = self.SessionLocal()
            try:
                barrier.wait()
                res = record_coupon_usage(db, coupon_id, "user-1", f"order-{i}", 10)
            finally:
                db.close()
            with results_lock:
                results.append(res)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(attempts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len([r for r in results if r.ok]), per_user)
        self.assertTrue(all(r.reason == "per_user_limit_reached" for r in results if not r.ok))
        with self.SessionLocal() as db:
            used = db.query(Coupon.used_count).filter(Coupon.id == coupon_id).scalar()
            self.assertEqual(count_usage_by_coupon_and_user(db, coupon_id, "user-1"), per_user)
        self.assertEqual(used, per_user)


if __name__ == "__main__":
    unittest.main()
