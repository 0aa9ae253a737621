"""Create phase run history table."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261005_0003"
down_revision = "20261005_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "phase_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("phase_id", sa.String(length=16), nullable=False),
        sa.Column("triggered_by", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("summary_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_phase_runs_phase_id", "phase_runs", ["phase_id"], unique=False)
    op.create_index("ix_phase_runs_run_at", "phase_runs", ["run_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_phase_runs_run_at", table_name="phase_runs")
    op.drop_index("ix_phase_runs_phase_id", table_name="phase_runs")
    op.drop_table("phase_runs")
