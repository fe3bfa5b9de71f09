"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _inspector():
    from sqlalchemy import inspect as sa_inspect
    return sa_inspect(op.get_bind())


def upgrade() -> None:
    inspector = _inspector()
    existing_tables = set(inspector.get_table_names())

    def existing_indexes(table: str) -> set[str]:
        if table not in existing_tables:
            return set()
        return {idx["name"] for idx in inspector.get_indexes(table)}

    if "coupons" not in existing_tables:
        op.create_table(
            "coupons",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("code", sa.String(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("discount_type", sa.String(), nullable=False, server_default="percentage"),
            sa.Column("discount_value", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("min_purchase_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("max_discount_amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("usage_limit", sa.Integer(), nullable=True),
            sa.Column("usage_limit_per_user", sa.Integer(), nullable=True),
            sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.CheckConstraint("discount_type IN ('percentage', 'fixed_amount')", name="ck_coupons_discount_type"),
            sa.CheckConstraint("used_count >= 0", name="ck_coupons_used_count_non_negative"),
        )
    idxs = existing_indexes("coupons")
    if "ix_coupons_id" not in idxs:
        op.create_index("ix_coupons_id", "coupons", ["id"])
    if "ix_coupons_code" not in idxs:
        op.create_index("ix_coupons_code", "coupons", ["code"], unique=True)
    if "ix_coupons_is_active" not in idxs:
        op.create_index("ix_coupons_is_active", "coupons", ["is_active"])
    if "ux_coupons_code_lower" not in idxs:
        # Case-insensitive uniqueness for codes written outside this service.
        op.create_index("ux_coupons_code_lower", "coupons", [sa.text("lower(code)")], unique=True)

    if "coupon_usage" not in existing_tables:
        op.create_table(
            "coupon_usage",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("coupon_id", sa.String(), sa.ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.String(), nullable=True),
            sa.Column("order_id", sa.String(), nullable=False),
            sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("used_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("coupon_usage")
    if "ix_coupon_usage_id" not in idxs:
        op.create_index("ix_coupon_usage_id", "coupon_usage", ["id"])
    if "ix_coupon_usage_coupon_id" not in idxs:
        op.create_index("ix_coupon_usage_coupon_id", "coupon_usage", ["coupon_id"])
    if "ix_coupon_usage_user_id" not in idxs:
        op.create_index("ix_coupon_usage_user_id", "coupon_usage", ["user_id"])
    if "ix_coupon_usage_order_id" not in idxs:
        op.create_index("ix_coupon_usage_order_id", "coupon_usage", ["order_id"], unique=True)

    if "user_profiles" not in existing_tables:
        op.create_table(
            "user_profiles",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("full_name", sa.String(), nullable=True),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("user_profiles")
    if "ix_user_profiles_id" not in idxs:
        op.create_index("ix_user_profiles_id", "user_profiles", ["id"])
    if "ix_user_profiles_email" not in idxs:
        op.create_index("ix_user_profiles_email", "user_profiles", ["email"])

    if "orders" not in existing_tables:
        op.create_table(
            "orders",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("order_number", sa.String(), nullable=True),
            sa.Column("user_id", sa.String(), nullable=True),
            sa.Column("total", sa.Numeric(12, 2), nullable=True),
            sa.Column("coupon_code", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("orders")
    if "ix_orders_id" not in idxs:
        op.create_index("ix_orders_id", "orders", ["id"])
    if "ix_orders_order_number" not in idxs:
        op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    if "ix_orders_user_id" not in idxs:
        op.create_index("ix_orders_user_id", "orders", ["user_id"])


def downgrade() -> None:
    existing_tables = set(_inspector().get_table_names())
    # Ledger before coupons for the foreign key.
    for table in ("coupon_usage", "coupons", "orders", "user_profiles"):
        if table in existing_tables:
            op.drop_table(table)
