"""Create the sent reminder marker table."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sent_reminders",
        sa.Column("reminder_key", sa.String(length=160), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rule_id", sa.String(length=128), nullable=True),
        sa.Column("occurrence_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recipient_email", sa.String(length=320), nullable=True),
        sa.PrimaryKeyConstraint("reminder_key"),
    )
    op.create_index("ix_sent_reminders_expires_at", "sent_reminders", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sent_reminders_expires_at", table_name="sent_reminders")
    op.drop_table("sent_reminders")
