"""Create owner, schedule, and schedule exception tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "owners",
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner_id"),
    )

    op.create_table(
        "schedules",
        sa.Column("schedule_id", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("repeat", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("repeat_type", sa.String(length=16), nullable=False, server_default="daily"),
        sa.Column("repeat_days_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("schedule_id"),
    )
    op.create_index("ix_schedules_owner_id", "schedules", ["owner_id"], unique=False)

    op.create_table(
        "schedule_exceptions",
        sa.Column("exception_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("schedule_id", sa.String(length=64), nullable=False),
        sa.Column("occurrence_start", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["schedule_id"], ["schedules.schedule_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("exception_id"),
        sa.UniqueConstraint("schedule_id", "occurrence_start", name="uq_schedule_exception"),
    )
    op.create_index(
        "ix_schedule_exceptions_schedule_id",
        "schedule_exceptions",
        ["schedule_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_schedule_exceptions_schedule_id", table_name="schedule_exceptions")
    op.drop_table("schedule_exceptions")
    op.drop_index("ix_schedules_owner_id", table_name="schedules")
    op.drop_table("schedules")
    op.drop_table("owners")
