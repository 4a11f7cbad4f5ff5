"""create buyer events

Revision ID: 202610170002
Revises: 202610170001
Create Date: 2026-10-17 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170002"
down_revision: str | None = "202610170001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "buyer_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("profile_id", sa.Uuid(), nullable=True),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("lead_source", sa.String(length=64), nullable=True),
        sa.Column("source_listing_id", sa.String(length=128), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_by_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["leads.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["profile_id"], ["profiles.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["profiles.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_buyer_events_lead_id", "buyer_events", ["lead_id"], unique=False)
    op.create_index("ix_buyer_events_lead_type", "buyer_events", ["lead_id", "event_type"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_buyer_events_lead_type", table_name="buyer_events")
    op.drop_index("ix_buyer_events_lead_id", table_name="buyer_events")
    op.drop_table("buyer_events")
