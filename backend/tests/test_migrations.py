import importlib.util
import unittest
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect
from sqlalchemy.pool import StaticPool


VERSIONS = Path(__file__).resolve().parents[1] / "alembic" / "versions"
TABLES = {"coupons", "coupon_usage", "orders", "user_profiles"}


def _load_revision(name: str):
    found = importlib.util.spec_from_file_location(f"revision_{name}", VERSIONS / f"{name}.py")
    module = importlib.util.module_from_spec(found)
    found.loader.exec_module(module)
    return module


class TestInitialRevision(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite://", poolclass=StaticPool)
        self.revision = _load_revision("0001_init")

    def tearDown(self):
        self.engine.dispose()

    def _run(self, step):
        with self.engine.begin() as conn:
            ctx = MigrationContext.configure(conn)
            with Operations.context(ctx):
                step()

    def test_upgrade_creates_tables(self):
        self._run(self.revision.upgrade)
        inspector = inspect(self.engine)
        self.assertTrue(TABLES <= set(inspector.get_table_names()))
        self.assertIn("ix_coupon_usage_order_id", {idx["name"] for idx in inspector.get_indexes("coupon_usage")})

    def test_downgrade_drops_every_table(self):
        self._run(self.revision.upgrade)
        self._run(self.revision.downgrade)
        self.assertEqual(set(inspect(self.engine).get_table_names()) & TABLES, set())


if __name__ == "__main__":
    unittest.main()
