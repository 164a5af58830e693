"""Create the lead_messages table backing conversation history and read state."""

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
        "lead_messages",
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("conversation_key", sa.String(length=128), nullable=False),
        sa.Column("body_text", sa.Text(), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="delivered"),
        sa.Column("auto_generated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index(
        "ix_lead_messages_conversation_key",
        "lead_messages",
        ["conversation_key"],
        unique=False,
    )
    op.create_index(
        "ix_lead_messages_sent_at",
        "lead_messages",
        ["sent_at"],
        unique=False,
    )
    op.create_index(
        "ix_lead_messages_conversation_key_read_at",
        "lead_messages",
        ["conversation_key", "read_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_lead_messages_conversation_key_read_at", table_name="lead_messages")
    op.drop_index("ix_lead_messages_sent_at", table_name="lead_messages")
    op.drop_index("ix_lead_messages_conversation_key", table_name="lead_messages")
    op.drop_table("lead_messages")
