"""create enrollment and payment tables

Revision ID: 3a9c1e7b52d4
Revises:
Create Date: 2026-10-19 10:12:44.518203

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3a9c1e7b52d4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _index(table: str, *columns: str, unique: bool = False) -> None:
    for column in columns:
        op.create_index(f"ix_{table}_{column}", table, [column], unique=unique)


def upgrade() -> None:
    # Course pricing projection
    op.create_table(
        "courses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("instructor_id", sa.Integer(), nullable=False),
        sa.Column("pricing_model", sa.String(20), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("one_time_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("monthly_rate", sa.Numeric(10, 2), nullable=True),
        sa.Column("quarterly_rate", sa.Numeric(10, 2), nullable=True),
        sa.Column("yearly_rate", sa.Numeric(10, 2), nullable=True),
        sa.Column("default_billing_cycle", sa.String(20), nullable=False),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "renewal_discount_percentage",
            sa.Numeric(5, 2),
            nullable=False,
            server_default="0",
        ),
        sa.Column(
            "is_open_for_enrollment",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column("device_limit", sa.Integer(), nullable=True),
        sa.Column("total_lectures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    _index("courses", "id", "instructor_id")

    op.create_table(
        "enrollments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("learner_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), sa.ForeignKey("courses.id"), nullable=False),
        sa.Column("guru_id", sa.Integer(), nullable=False),
        sa.Column("enrollment_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("enrolled_at", sa.DateTime(), nullable=False),
        sa.Column("activating_transaction_id", sa.Integer(), nullable=True),
        sa.Column("payment_method", sa.String(30), nullable=True),
        sa.Column("payment_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("payment_currency", sa.String(3), nullable=True),
        sa.Column("payment_status", sa.String(20), nullable=False),
        sa.Column("gateway_order_id", sa.String(100), nullable=True),
        sa.Column("gateway_payment_id", sa.String(100), nullable=True),
        sa.Column("payment_signature", sa.String(255), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("guru_share", sa.Numeric(10, 2), nullable=True),
        sa.Column("platform_share", sa.Numeric(10, 2), nullable=True),
        sa.Column("device_limit", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column(
            "access_active", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("access_notes", sa.String(500), nullable=True),
        sa.Column("overall_progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_time_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_accessed_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column(
            "certificate_eligible",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "certificate_issued",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("certificate_issued_at", sa.DateTime(), nullable=True),
        sa.Column("suspension_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.UniqueConstraint(
            "learner_id", "course_id", name="uq_enrollment_learner_course"
        ),
    )
    _index(
        "enrollments",
        "id",
        "learner_id",
        "course_id",
        "guru_id",
        "status",
        "expires_at",
        "access_active",
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "enrollment_id",
            sa.Integer(),
            sa.ForeignKey("enrollments.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("billing_cycle", sa.String(20), nullable=False),
        sa.Column("next_billing_cycle", sa.String(20), nullable=True),
        sa.Column("current_period_start", sa.DateTime(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(), nullable=False),
        sa.Column("renewal_date", sa.DateTime(), nullable=True),
        sa.Column("trial_end", sa.DateTime(), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "discount_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"
        ),
        sa.Column("paused_at", sa.DateTime(), nullable=True),
        sa.Column("pause_end_date", sa.DateTime(), nullable=True),
        sa.Column("pause_reason", sa.String(500), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancel_reason", sa.String(500), nullable=True),
        sa.Column("cancel_feedback", sa.Text(), nullable=True),
        sa.Column("renewal_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_subscription_period_order",
        ),
    )
    _index("subscriptions", "id", "status", "renewal_date")

    op.create_table(
        "enrollment_devices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "enrollment_id",
            sa.Integer(),
            sa.ForeignKey("enrollments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("device_id", sa.String(128), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("browser", sa.String(100), nullable=True),
        sa.Column("os", sa.String(100), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("locale", sa.String(64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("registered_at", sa.DateTime(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("enrollment_id", "device_id", name="uq_enrollment_device"),
    )
    _index("enrollment_devices", "id", "enrollment_id", "is_active")

    op.create_table(
        "lecture_completions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "enrollment_id",
            sa.Integer(),
            sa.ForeignKey("enrollments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("lecture_id", sa.String(100), nullable=False),
        sa.Column("time_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("enrollment_id", "lecture_id", name="uq_lecture_completion"),
    )
    _index("lecture_completions", "id", "enrollment_id")

    op.create_table(
        "enrollment_audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "enrollment_id",
            sa.Integer(),
            sa.ForeignKey("enrollments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("actor_role", sa.String(20), nullable=False),
        sa.Column("previous_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=True),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _index("enrollment_audit_events", "id", "enrollment_id", "created_at")

    # Payment ledger
    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("transaction_id", sa.String(40), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("learner_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), sa.ForeignKey("courses.id"), nullable=False),
        sa.Column("guru_id", sa.Integer(), nullable=False),
        sa.Column(
            "enrollment_id", sa.Integer(), sa.ForeignKey("enrollments.id"), nullable=True
        ),
        sa.Column("enrollment_type", sa.String(20), nullable=False),
        sa.Column("billing_cycle", sa.String(20), nullable=True),
        sa.Column("amount_total", sa.Numeric(10, 2), nullable=False),
        sa.Column("base_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("discount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("discount_code", sa.String(50), nullable=True),
        sa.Column("tax", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column(
            "processing_fee", sa.Numeric(10, 2), nullable=False, server_default="0"
        ),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("guru_share", sa.Numeric(10, 2), nullable=False),
        sa.Column("platform_share", sa.Numeric(10, 2), nullable=False),
        sa.Column(
            "guru_share_percentage", sa.Numeric(5, 2), nullable=False, server_default="80"
        ),
        sa.Column(
            "platform_share_percentage",
            sa.Numeric(5, 2),
            nullable=False,
            server_default="20",
        ),
        sa.Column(
            "is_distributed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("distributed_at", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payment_method", sa.String(30), nullable=True),
        sa.Column("receipt", sa.String(40), nullable=True),
        sa.Column("gateway_order_id", sa.String(100), nullable=True),
        sa.Column("gateway_payment_id", sa.String(100), nullable=True),
        sa.Column("gateway_signature", sa.String(255), nullable=True),
        sa.Column("failure_reason", sa.String(255), nullable=True),
        sa.Column("failure_code", sa.String(50), nullable=True),
        sa.Column(
            "refunded_amount", sa.Numeric(10, 2), nullable=False, server_default="0"
        ),
        sa.Column("refund_reason", sa.String(500), nullable=True),
        sa.Column("refunded_at", sa.DateTime(), nullable=True),
        sa.Column("refunded_by", sa.Integer(), nullable=True),
        sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("risk_level", sa.String(20), nullable=False),
        sa.Column("risk_factors", sa.JSON(), nullable=False),
        sa.Column(
            "review_required", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("country", sa.String(2), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("initiated_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    _index("payment_transactions", "transaction_id", "gateway_order_id", unique=True)
    _index(
        "payment_transactions",
        "id",
        "learner_id",
        "course_id",
        "guru_id",
        "enrollment_id",
        "is_distributed",
        "status",
        "gateway_payment_id",
        "created_at",
        "completed_at",
    )

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_pk",
            sa.Integer(),
            sa.ForeignKey("payment_transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event", sa.String(40), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("previous_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("gateway_event_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _index("payment_events", "id", "transaction_pk")

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(100), nullable=False, unique=True),
        sa.Column("event_type", sa.String(60), nullable=False),
        sa.Column("outcome", sa.String(60), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=False),
    )
    _index("webhook_deliveries", "id")


def downgrade() -> None:
    for table in (
        "webhook_deliveries",
        "payment_events",
        "payment_transactions",
        "enrollment_audit_events",
        "lecture_completions",
        "enrollment_devices",
        "subscriptions",
        "enrollments",
        "courses",
    ):
        op.drop_table(table)
