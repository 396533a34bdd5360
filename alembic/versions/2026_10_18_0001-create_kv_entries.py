"""Create kv_entries table for gateway state.

Revision ID: 2026_10_18_0001
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_18_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create kv_entries table."""
    op.create_table(
        "kv_entries",
        sa.Column("key", sa.String(512), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_kv_entries_expires_at", "kv_entries", ["expires_at"])


def downgrade() -> None:
    """Drop kv_entries table."""
    op.drop_index("idx_kv_entries_expires_at", table_name="kv_entries")
    op.drop_table("kv_entries")
