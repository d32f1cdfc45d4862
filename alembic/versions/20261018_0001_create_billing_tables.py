"""create billing tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def _create_indexes(table_name: str, indexes: list[tuple[str, list[str], bool]]) -> None:
    inspector = sa.inspect(op.get_bind())
    if not _table_exists(inspector, table_name):
        return
    for index_name, columns, unique in indexes:
        if not _index_exists(inspector, table_name, index_name):
            op.create_index(index_name, table_name, columns, unique=unique)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "onboarding_submissions"):
        op.create_table(
            "onboarding_submissions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("session_id", sa.String(length=36), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("business_name", sa.String(length=255), nullable=True),
            sa.Column("form_data", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="submitted"),
            sa.Column("payment_completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("stripe_customer_id", sa.String(length=120), nullable=True),
            sa.Column("stripe_subscription_id", sa.String(length=120), nullable=True),
            sa.Column("stripe_subscription_schedule_id", sa.String(length=120), nullable=True),
            sa.Column("stripe_invoice_id", sa.String(length=120), nullable=True),
            sa.Column("stripe_payment_id", sa.String(length=120), nullable=True),
            sa.Column("subscription_status", sa.String(length=40), nullable=True),
            sa.Column("checkout_fingerprint", sa.String(length=64), nullable=True),
            sa.Column("checkout_started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("payment_summary", sa.JSON(), nullable=True),
            sa.Column("payment_tax_amount", sa.Integer(), nullable=True),
            sa.Column("payment_tax_currency", sa.String(length=3), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(
        "onboarding_submissions",
        [
            ("ix_onboarding_submissions_session_id", ["session_id"], False),
            ("ix_onboarding_submissions_stripe_customer_id", ["stripe_customer_id"], False),
            ("ix_onboarding_submissions_stripe_subscription_id", ["stripe_subscription_id"], False),
            (
                "ix_onboarding_submissions_stripe_subscription_schedule_id",
                ["stripe_subscription_schedule_id"],
                False,
            ),
            ("ix_onboarding_submissions_stripe_invoice_id", ["stripe_invoice_id"], False),
            ("ix_onboarding_submissions_stripe_payment_id", ["stripe_payment_id"], False),
            ("ix_onboarding_submissions_status_created_at", ["status", "created_at"], False),
        ],
    )

    inspector = sa.inspect(bind)
    if not _table_exists(inspector, "submission_payments"):
        op.create_table(
            "submission_payments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("submission_id", sa.String(length=36), nullable=False),
            sa.Column("stripe_customer_id", sa.String(length=120), nullable=True),
            sa.Column("stripe_subscription_id", sa.String(length=120), nullable=True),
            sa.Column("stripe_subscription_schedule_id", sa.String(length=120), nullable=True),
            sa.Column("stripe_invoice_id", sa.String(length=120), nullable=True),
            sa.Column("stripe_payment_id", sa.String(length=120), nullable=True),
            sa.Column("amount", sa.Integer(), nullable=True),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
            sa.Column("discount_code", sa.String(length=80), nullable=True),
            sa.Column("discount_amount", sa.Integer(), nullable=True),
            sa.Column("payment_method", sa.String(length=120), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("failure_reason", sa.String(length=500), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["submission_id"], ["onboarding_submissions.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(
        "submission_payments",
        [("ix_submission_payments_submission_id", ["submission_id"], True)],
    )

    inspector = sa.inspect(bind)
    if not _table_exists(inspector, "payment_webhook_events"):
        op.create_table(
            "payment_webhook_events",
            sa.Column("event_id", sa.String(length=255), nullable=False),
            sa.Column("event_type", sa.String(length=120), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="processing"),
            sa.Column("livemode", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("event_id"),
        )
    _create_indexes(
        "payment_webhook_events",
        [
            ("ix_payment_webhook_events_status_received_at", ["status", "received_at"], False),
            ("ix_payment_webhook_events_type_received_at", ["event_type", "received_at"], False),
        ],
    )

    inspector = sa.inspect(bind)
    if not _table_exists(inspector, "checkout_rate_limits"):
        op.create_table(
            "checkout_rate_limits",
            sa.Column("scope_key", sa.String(length=80), nullable=False),
            sa.Column("window_start", sa.BigInteger(), nullable=False),
            sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("scope_key", "window_start"),
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name in (
        "checkout_rate_limits",
        "payment_webhook_events",
        "submission_payments",
        "onboarding_submissions",
    ):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
