"""restore state and history

Revision ID: 0001_restore_state
Revises:
Create Date: 2026-10-19 00:00:00

"""
import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision = "0001_restore_state"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "restore_state",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("restore_id", sa.String(length=96), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "restore_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("restore_id", sa.String(length=96), nullable=False),
        sa.Column("backup_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
    )
    op.create_index("ix_restore_history_completed_at", "restore_history", ["completed_at"])


def downgrade() -> None:
    op.drop_index("ix_restore_history_completed_at", table_name="restore_history")
    op.drop_table("restore_history")
    op.drop_table("restore_state")
