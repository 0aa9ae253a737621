"""Create notification job table keyed by order and phase."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261005_0002"
down_revision = "20261005_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_jobs",
        sa.Column("job_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("order_id", sa.String(length=128), nullable=False),
        sa.Column("phase_id", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalation_posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalation_external_id", sa.String(length=128), nullable=True),
        sa.Column("escalation_recorded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_delivery_date_snapshot", sa.Date(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
        sa.UniqueConstraint("order_id", "phase_id", name="uq_notification_jobs_order_phase"),
    )
    op.create_index("ix_notification_jobs_order_id", "notification_jobs", ["order_id"], unique=False)
    op.create_index("ix_notification_jobs_status", "notification_jobs", ["status"], unique=False)
    op.create_index("ix_notification_jobs_updated_at", "notification_jobs", ["updated_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_notification_jobs_updated_at", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_status", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_order_id", table_name="notification_jobs")
    op.drop_table("notification_jobs")
