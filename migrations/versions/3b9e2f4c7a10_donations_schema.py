"""donations schema

Revision ID: 3b9e2f4c7a10
Revises:
Create Date: 2026-10-19 09:12:41.118204
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "3b9e2f4c7a10"
down_revision = None
branch_labels = None
depends_on = None

DONATION_STATUSES = ("pending", "active", "completed", "failed", "refunded", "cancelled")
DONATION_TYPES = ("one-time", "monthly")


def upgrade():
    # --- donations ---
    op.create_table(
        "donations",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("donor_name", sa.String(length=160), nullable=False),
        sa.Column("donor_email", sa.String(length=254), nullable=False),
        sa.Column("donor_phone", sa.String(length=40), nullable=True),
        sa.Column("address_line1", sa.String(length=200), nullable=True),
        sa.Column("address_line2", sa.String(length=200), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("state", sa.String(length=100), nullable=True),
        sa.Column("zip_code", sa.String(length=20), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "donation_type",
            sa.Enum(*DONATION_TYPES, name="donationtype", native_enum=False, length=16),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(*DONATION_STATUSES, name="donationstatus", native_enum=False, length=16),
            nullable=False,
        ),
        sa.Column("checkout_token", sa.String(length=255), nullable=True),
        sa.Column("secret_token", sa.String(length=255), nullable=True),
        sa.Column("transaction_id", sa.String(length=120), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(length=120), nullable=True),
        sa.Column("customer_id", sa.String(length=120), nullable=True),
        sa.Column("subscription_id", sa.String(length=120), nullable=True),
        sa.Column("payment_plan_id", sa.String(length=120), nullable=True),
        sa.Column("subscription_status", sa.String(length=40), nullable=True),
        sa.Column("next_billing_date", sa.String(length=32), nullable=True),
        sa.Column("last_status_sync", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_donations_amount_positive"),
    )
    with op.batch_alter_table("donations") as batch_op:
        batch_op.create_index(batch_op.f("ix_donations_user_id"), ["user_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_donor_email"), ["donor_email"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_status"), ["status"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_transaction_id"), ["transaction_id"], unique=False)
        batch_op.create_index(
            batch_op.f("ix_donations_gateway_transaction_id"), ["gateway_transaction_id"], unique=False
        )
        batch_op.create_index(batch_op.f("ix_donations_subscription_id"), ["subscription_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_created_at"), ["created_at"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_updated_at"), ["updated_at"], unique=False)
        batch_op.create_index("ix_donations_status_type", ["status", "donation_type"], unique=False)

    # --- gateway_events ---
    op.create_table(
        "gateway_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=60), nullable=False),
        sa.Column("object_id", sa.String(length=120), nullable=True),
        sa.Column("outcome", sa.String(length=30), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    with op.batch_alter_table("gateway_events") as batch_op:
        batch_op.create_index(batch_op.f("ix_gateway_events_event_id"), ["event_id"], unique=True)
        batch_op.create_index(batch_op.f("ix_gateway_events_type"), ["type"], unique=False)
        batch_op.create_index(batch_op.f("ix_gateway_events_object_id"), ["object_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_gateway_events_created_at"), ["created_at"], unique=False)
        batch_op.create_index(batch_op.f("ix_gateway_events_updated_at"), ["updated_at"], unique=False)
        batch_op.create_index("ix_gateway_events_type_created", ["type", "created_at"], unique=False)


def downgrade():
    with op.batch_alter_table("gateway_events") as batch_op:
        batch_op.drop_index("ix_gateway_events_type_created")
        batch_op.drop_index(batch_op.f("ix_gateway_events_updated_at"))
        batch_op.drop_index(batch_op.f("ix_gateway_events_created_at"))
        batch_op.drop_index(batch_op.f("ix_gateway_events_object_id"))
        batch_op.drop_index(batch_op.f("ix_gateway_events_type"))
        batch_op.drop_index(batch_op.f("ix_gateway_events_event_id"))
    op.drop_table("gateway_events")

    with op.batch_alter_table("donations") as batch_op:
        batch_op.drop_index("ix_donations_status_type")
        batch_op.drop_index(batch_op.f("ix_donations_updated_at"))
        batch_op.drop_index(batch_op.f("ix_donations_created_at"))
        batch_op.drop_index(batch_op.f("ix_donations_subscription_id"))
        batch_op.drop_index(batch_op.f("ix_donations_gateway_transaction_id"))
        batch_op.drop_index(batch_op.f("ix_donations_transaction_id"))
        batch_op.drop_index(batch_op.f("ix_donations_status"))
        batch_op.drop_index(batch_op.f("ix_donations_donor_email"))
        batch_op.drop_index(batch_op.f("ix_donations_user_id"))
    op.drop_table("donations")
