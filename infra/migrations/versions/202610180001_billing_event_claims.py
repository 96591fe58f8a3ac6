"""billing event claim lease

Revision ID: 202610180001
Revises: 202610170001
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610180001"
down_revision = "202610170001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("billing_events") as batch_op:
        batch_op.add_column(sa.Column("claimed_by", sa.String(), nullable=True))
        batch_op.add_column(sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True))
        batch_op.create_index("ix_billing_events_claimed_by", ["claimed_by"])


def downgrade() -> None:
    with op.batch_alter_table("billing_events") as batch_op:
        batch_op.drop_index("ix_billing_events_claimed_by")
        batch_op.drop_column("claimed_at")
        batch_op.drop_column("claimed_by")
