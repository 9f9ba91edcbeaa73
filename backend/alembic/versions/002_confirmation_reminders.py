"""Confirmation reminders: remember when each booked reservation was reminded.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "reservations",
        sa.Column("confirmation_reminded_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_reservations_reminder_due",
        "reservations",
        ["status", "confirmation_reminded_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_reservations_reminder_due", table_name="reservations")
    op.drop_column("reservations", "confirmation_reminded_at")
