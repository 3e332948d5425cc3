"""Slots, queue counters and closure operations

Revision ID: 0001
Revises:
Create Date: (run alembic upgrade head)

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "slots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("room_id", sa.String(), nullable=False),
        sa.Column("sub_room_id", sa.String(), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.DateTime(), nullable=False),
        sa.Column("end_time", sa.DateTime(), nullable=False),
        sa.Column("shift_name", sa.String(), nullable=True),
        sa.Column("dentist_ids", sa.JSON(), nullable=False),
        sa.Column("nurse_ids", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="available"),
        sa.Column("appointment_id", sa.String(), nullable=True),
        sa.Column("has_carried_appointment", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("queue_number", sa.String(), nullable=True),
        sa.Column("called_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("disabled_reason", sa.Text(), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(), nullable=True),
        sa.Column("status_changed_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_slots_id", "slots", ["id"])
    op.create_index("idx_slot_room_date", "slots", ["room_id", "sub_room_id", "date"])
    op.create_index("idx_slot_date_status", "slots", ["date", "status"])
    op.create_index("idx_slot_appointment", "slots", ["appointment_id"])

    op.create_table(
        "queue_counters",
        sa.Column("scope_key", sa.String(), primary_key=True),
        sa.Column("room_id", sa.String(), nullable=False),
        sa.Column("sub_room_id", sa.String(), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "closure_operations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("operation_type", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("date_from", sa.Date(), nullable=True),
        sa.Column("date_to", sa.Date(), nullable=True),
        sa.Column("criteria", sa.JSON(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("closure_type", sa.String(), nullable=False, server_default="other"),
        sa.Column("stats", sa.JSON(), nullable=False),
        sa.Column("affected_rooms", sa.JSON(), nullable=False),
        sa.Column("cancelled_appointments", sa.JSON(), nullable=False),
        sa.Column("affected_staff_without_appointments", sa.JSON(), nullable=False),
        sa.Column("slot_ids", sa.JSON(), nullable=False),
        sa.Column("errors", sa.JSON(), nullable=False),
        sa.Column("closed_by", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("restored_at", sa.DateTime(), nullable=True),
        sa.Column("restored_by", sa.JSON(), nullable=True),
        sa.Column("restoration_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_closure_operations_id", "closure_operations", ["id"])
    op.create_index("ix_closure_operations_operation_type", "closure_operations", ["operation_type"])
    op.create_index("ix_closure_operations_action", "closure_operations", ["action"])
    op.create_index("ix_closure_operations_date_from", "closure_operations", ["date_from"])
    op.create_index("ix_closure_operations_status", "closure_operations", ["status"])
    op.create_index("idx_closure_status_date", "closure_operations", ["status", "date_from"])
    op.create_index("idx_closure_created", "closure_operations", ["created_at"])


def downgrade() -> None:
    op.drop_table("closure_operations")
    op.drop_table("queue_counters")
    op.drop_table("slots")
