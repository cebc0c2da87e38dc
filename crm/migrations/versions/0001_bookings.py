"""Bookings, team memberships and the booking change NOTIFY trigger

Revision ID: 0001_bookings
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_bookings"
down_revision = None
branch_labels = None
depends_on = None

CHANNEL = "booking_changes"


def upgrade() -> None:
    op.create_table(
        "bookings",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=True),
        sa.Column("customer_name", sa.String(length=200), nullable=True),
        sa.Column("service_name", sa.String(length=200), nullable=True),
        sa.Column("service_type", sa.String(length=64), nullable=True),
        sa.Column("staff_id", sa.String(length=36), nullable=True),
        sa.Column("team_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(length=32), nullable=False, server_default="unpaid"),
        sa.Column("payment_method", sa.String(length=32), nullable=True),
        sa.Column("amount_paid", sa.Numeric(12, 2), nullable=True),
        sa.Column("payment_date", sa.Date(), nullable=True),
        sa.Column("payment_slip_url", sa.Text(), nullable=True),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("booking_date", sa.Date(), nullable=True),
        sa.Column("start_time", sa.Time(), nullable=True),
        sa.Column("end_time", sa.Time(), nullable=True),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recurring_group_id", sa.String(length=36), nullable=True),
        sa.Column("recurring_sequence", sa.Integer(), nullable=True),
        sa.Column("recurring_total", sa.Integer(), nullable=True),
        sa.Column("recurring_pattern", sa.String(length=32), nullable=True),
        sa.Column("parent_booking_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(length=36), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "NOT (staff_id IS NOT NULL AND team_id IS NOT NULL)",
            name="ck_bookings_single_assignee",
        ),
        sa.CheckConstraint(
            "NOT is_recurring OR (recurring_group_id IS NOT NULL AND recurring_sequence IS NOT NULL)",
            name="ck_bookings_recurring_fields",
        ),
    )
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"])
    op.create_index("ix_bookings_staff_id", "bookings", ["staff_id"])
    op.create_index("ix_bookings_team_id", "bookings", ["team_id"])
    op.create_index("ix_bookings_recurring_group_id", "bookings", ["recurring_group_id"])
    op.create_index(
        "ix_bookings_group_sequence",
        "bookings",
        ["recurring_group_id", "recurring_sequence"],
        unique=True,
    )

    op.create_table(
        "team_memberships",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("staff_id", sa.String(length=36), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_team_memberships_team_id", "team_memberships", ["team_id"])
    op.create_index("ix_team_memberships_staff_id", "team_memberships", ["staff_id"])

    # Realtime feed: every row change is published as JSON on CHANNEL
    op.execute(
        f"""
        CREATE OR REPLACE FUNCTION public.notify_booking_change()
        RETURNS TRIGGER
        SET search_path = public
        AS $$
        BEGIN
            PERFORM pg_notify(
                '{CHANNEL}',
                json_build_object(
                    'table', TG_TABLE_NAME,
                    'type', TG_OP,
                    'new', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
                    'old', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE row_to_json(OLD) END
                )::text
            );
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER bookings_change_notify
        AFTER INSERT OR UPDATE OR DELETE ON bookings
        FOR EACH ROW
        EXECUTE FUNCTION public.notify_booking_change();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS bookings_change_notify ON bookings;")
    op.execute("DROP FUNCTION IF EXISTS public.notify_booking_change();")
    op.drop_index("ix_team_memberships_staff_id", table_name="team_memberships")
    op.drop_index("ix_team_memberships_team_id", table_name="team_memberships")
    op.drop_table("team_memberships")
    op.drop_index("ix_bookings_group_sequence", table_name="bookings")
    op.drop_index("ix_bookings_recurring_group_id", table_name="bookings")
    op.drop_index("ix_bookings_team_id", table_name="bookings")
    op.drop_index("ix_bookings_staff_id", table_name="bookings")
    op.drop_index("ix_bookings_customer_id", table_name="bookings")
    op.drop_table("bookings")
