"""Create credit ledger tables

Revision ID: 3f9c2a7d1e04
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3f9c2a7d1e04"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "credit_balances",
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("monthly_credits", sa.Integer(), nullable=False),
        sa.Column("monthly_allotment", sa.Integer(), nullable=False),
        sa.Column("monthly_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rollover_credits", sa.Integer(), nullable=False),
        sa.Column("rollover_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("purchased_credits", sa.Integer(), nullable=False),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False),
        sa.Column("lifetime_spent", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("monthly_credits >= 0", name="ck_credit_balances_monthly"),
        sa.CheckConstraint(
            "rollover_credits >= 0", name="ck_credit_balances_rollover"
        ),
        sa.CheckConstraint(
            "purchased_credits >= 0", name="ck_credit_balances_purchased"
        ),
        sa.PrimaryKeyConstraint("account_id"),
    )
    op.create_index(
        "ix_credit_balances_monthly_reset_at", "credit_balances", ["monthly_reset_at"]
    )
    op.create_index(
        "ix_credit_balances_rollover_expires_at",
        "credit_balances",
        ["rollover_expires_at"],
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("monthly_delta", sa.Integer(), nullable=False),
        sa.Column("rollover_delta", sa.Integer(), nullable=False),
        sa.Column("purchased_delta", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["credit_balances.account_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "reason", "correlation_id", name="uq_credit_transactions_reason_correlation"
        ),
    )
    op.create_index(
        "ix_credit_transactions_account_id_id",
        "credit_transactions",
        ["account_id", "id"],
    )
    op.create_index(
        "ix_credit_transactions_correlation_id",
        "credit_transactions",
        ["correlation_id"],
    )

    op.create_table(
        "credit_purchases",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("package", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["credit_balances.account_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_payment_intent_id"),
    )
    op.create_index(
        "ix_credit_purchases_account_id", "credit_purchases", ["account_id"]
    )

    op.create_table(
        "credit_subscriptions",
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(), nullable=False),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("plan_tier", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("granted_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["credit_balances.account_id"]),
        sa.PrimaryKeyConstraint("account_id"),
        sa.UniqueConstraint("stripe_subscription_id"),
    )
    op.create_index(
        "ix_credit_subscriptions_stripe_customer_id",
        "credit_subscriptions",
        ["stripe_customer_id"],
    )

    op.create_table(
        "cost_throttle_counters",
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("current_window_cost", sa.Numeric(12, 6), nullable=False),
        sa.Column("lifetime_cost", sa.Numeric(14, 6), nullable=False),
        sa.Column("window_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_resets_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_alert_threshold", sa.Integer(), nullable=False),
        sa.Column("is_throttled", sa.Boolean(), nullable=False),
        sa.Column("throttled_reason", sa.String(), nullable=True),
        sa.Column("throttled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["credit_balances.account_id"]),
        sa.PrimaryKeyConstraint("account_id"),
    )
    op.create_index(
        "ix_cost_throttle_counters_window_resets_at",
        "cost_throttle_counters",
        ["window_resets_at"],
    )

    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("event_id"),
    )


def downgrade() -> None:
    op.drop_table("processed_webhook_events")
    op.drop_index(
        "ix_cost_throttle_counters_window_resets_at",
        table_name="cost_throttle_counters",
    )
    op.drop_table("cost_throttle_counters")
    op.drop_index(
        "ix_credit_subscriptions_stripe_customer_id",
        table_name="credit_subscriptions",
    )
    op.drop_table("credit_subscriptions")
    op.drop_index("ix_credit_purchases_account_id", table_name="credit_purchases")
    op.drop_table("credit_purchases")
    op.drop_index(
        "ix_credit_transactions_correlation_id", table_name="credit_transactions"
    )
    op.drop_index(
        "ix_credit_transactions_account_id_id", table_name="credit_transactions"
    )
    op.drop_table("credit_transactions")
    op.drop_index(
        "ix_credit_balances_rollover_expires_at", table_name="credit_balances"
    )
    op.drop_index("ix_credit_balances_monthly_reset_at", table_name="credit_balances")
    op.drop_table("credit_balances")
