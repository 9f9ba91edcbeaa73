"""Initial schema: class instances, capacity ledger, reservations, attendance,
entitlements, studio policies and idempotency keys.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_RESERVATION = "status NOT IN ('cancelled', 'no_show', 'expired')"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Class instances (owned by the upstream schedule generator)
    op.create_table(
        "class_instances",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("studio_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_capacity", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled"),
        *_timestamps(),
        sa.CheckConstraint("max_capacity >= 0", name="check_max_capacity_non_negative"),
        sa.CheckConstraint("ends_at > starts_at", name="check_class_window"),
        sa.CheckConstraint("status IN ('scheduled', 'cancelled', 'completed')", name="class_status"),
    )
    op.create_index("ix_class_instances_id", "class_instances", ["id"])
    op.create_index("ix_class_instances_studio_id", "class_instances", ["studio_id"])
    op.create_index("ix_class_instances_ends_at", "class_instances", ["ends_at"])

    # Capacity ledger: one row per class, `version` is the optimistic lock
    op.create_table(
        "class_capacity",
        sa.Column("class_instance_id", sa.Integer(), sa.ForeignKey("class_instances.id"), primary_key=True),
        sa.Column("booked_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("held_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("waitlist_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("swept_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("booked_count >= 0", name="check_booked_count_non_negative"),
        sa.CheckConstraint("held_count >= 0", name="check_held_count_non_negative"),
        sa.CheckConstraint("waitlist_count >= 0", name="check_waitlist_count_non_negative"),
    )

    # Member entitlement balances
    op.create_table(
        "member_entitlements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("studio_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("remaining", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("remaining IS NULL OR remaining >= 0", name="check_entitlement_remaining_non_negative"),
        sa.CheckConstraint("kind <> 'drop_in'", name="check_entitlement_not_drop_in"),
        sa.CheckConstraint(
            "kind IN ('comp_credit', 'class_pack', 'subscription', 'drop_in')", name="entitlement_kind"
        ),
    )
    op.create_index("ix_member_entitlements_id", "member_entitlements", ["id"])
    op.create_index("ix_member_entitlements_lookup", "member_entitlements", ["member_id", "studio_id", "kind"])

    # Reservations
    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("class_instance_id", sa.Integer(), sa.ForeignKey("class_instances.id"), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(20), nullable=True),
        sa.Column("entitlement_kind", sa.String(20), nullable=True),
        sa.Column("entitlement_ref", sa.String(64), nullable=True),
        sa.Column("entitlement_consumed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("waitlist_position", sa.Integer(), nullable=True),
        sa.Column("promoted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("promotion_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("promotion_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("walk_in", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint(
            "waitlist_position IS NULL OR waitlist_position >= 0",
            name="check_waitlist_position_non_negative",
        ),
        sa.CheckConstraint("status <> 'requested'", name="check_reservation_not_transient"),
        sa.CheckConstraint(
            "status IN ('requested', 'booked', 'confirmed', 'checked_in', 'cancelled', "
            "'no_show', 'waitlisted', 'promoted', 'expired')",
            name="reservation_status",
        ),
        sa.CheckConstraint(
            "cancellation_reason IN ('member_initiated', 'late_cancel', 'staff_cancel', 'class_cancelled')",
            name="cancellation_reason",
        ),
    )
    op.create_index("ix_reservations_id", "reservations", ["id"])
    op.create_index("ix_reservations_class_instance_id", "reservations", ["class_instance_id"])
    op.create_index("ix_reservations_member_id", "reservations", ["member_id"])
    # ONE LIVE RESERVATION PER MEMBER PER CLASS: partial unique index, so a
    # member can book again after cancelling, expiring or no-showing.
    op.create_index(
        "uq_reservations_member_live",
        "reservations",
        ["class_instance_id", "member_id"],
        unique=True,
        postgresql_where=sa.text(LIVE_RESERVATION),
        sqlite_where=sa.text(LIVE_RESERVATION),
    )
    # Waitlist reads: "class X, status waitlisted, ordered by position"
    op.create_index(
        "ix_reservations_class_status_position",
        "reservations",
        ["class_instance_id", "status", "waitlist_position"],
    )
    # Promotion expiry sweep: "status promoted, deadline <= now"
    op.create_index("ix_reservations_status_deadline", "reservations", ["status", "promotion_deadline"])

    # Attendance
    op.create_table(
        "attendance_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reservation_id", sa.Integer(), sa.ForeignKey("reservations.id"), nullable=False),
        sa.Column("class_instance_id", sa.Integer(), sa.ForeignKey("class_instances.id"), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("checked_in", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("checked_in_by", sa.String(64), nullable=False),
        sa.Column("walk_in", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.UniqueConstraint("reservation_id", name="uq_attendance_reservation"),
    )
    op.create_index("ix_attendance_records_id", "attendance_records", ["id"])
    op.create_index("ix_attendance_records_class_instance_id", "attendance_records", ["class_instance_id"])
    op.create_index("ix_attendance_records_member_id", "attendance_records", ["member_id"])

    # Per-studio policy overrides
    op.create_table(
        "studio_policies",
        sa.Column("studio_id", sa.Integer(), primary_key=True),
        sa.Column("cancellation_window_hours", sa.Float(), nullable=True),
        sa.Column("late_cancel_fee_cents", sa.Integer(), nullable=True),
        sa.Column("confirmation_window_hours", sa.Float(), nullable=True),
        sa.Column("promotion_window_minutes", sa.Integer(), nullable=True),
        sa.Column("expired_promotion_policy", sa.String(20), nullable=True),
        sa.Column("waitlist_enabled", sa.Boolean(), nullable=True),
        sa.Column("walk_ins_enabled", sa.Boolean(), nullable=True),
        sa.Column("walk_in_requires_entitlement", sa.Boolean(), nullable=True),
        sa.Column("drop_in_price_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "expired_promotion_policy IS NULL OR expired_promotion_policy IN ('drop', 'requeue')",
            name="check_expired_promotion_policy",
        ),
        sa.CheckConstraint(
            "late_cancel_fee_cents IS NULL OR late_cancel_fee_cents >= 0",
            name="check_late_cancel_fee_non_negative",
        ),
    )

    # Idempotency keys
    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("reservation_id", sa.Integer(), sa.ForeignKey("reservations.id"), nullable=False),
        sa.Column("attendance_id", sa.Integer(), sa.ForeignKey("attendance_records.id"), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("operation", "key", name="uq_idempotency_operation_key"),
    )
    op.create_index("ix_idempotency_records_id", "idempotency_records", ["id"])


def downgrade() -> None:
    op.drop_table("idempotency_records")
    op.drop_table("studio_policies")
    op.drop_table("attendance_records")
    op.drop_table("reservations")
    op.drop_table("member_entitlements")
    op.drop_table("class_capacity")
    op.drop_table("class_instances")
