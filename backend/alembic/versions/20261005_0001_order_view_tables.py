"""Create order view and per-phase order flag tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261005_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("order_id", sa.String(length=128), nullable=False),
        sa.Column("order_nbr", sa.String(length=64), nullable=False),
        sa.Column("customer_name", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("delivery_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("confirmed_via", sa.String(length=128), nullable=True),
        sa.Column("confirmed_with", sa.String(length=256), nullable=True),
        sa.Column("contact_channel", sa.String(length=256), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("order_id"),
    )
    op.create_index("ix_orders_order_nbr", "orders", ["order_nbr"], unique=False)
    op.create_index("ix_orders_delivery_date", "orders", ["delivery_date"], unique=False)

    op.create_table(
        "order_phase_flags",
        sa.Column("order_id", sa.String(length=128), nullable=False),
        sa.Column("phase_id", sa.String(length=16), nullable=False),
        sa.Column("blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.order_id"]),
        sa.PrimaryKeyConstraint("order_id", "phase_id"),
    )


def downgrade() -> None:
    op.drop_table("order_phase_flags")
    op.drop_index("ix_orders_delivery_date", table_name="orders")
    op.drop_index("ix_orders_order_nbr", table_name="orders")
    op.drop_table("orders")
