"""Add cost alerts and subscription event ordering

Revision ID: 8b41d0c6f2a9
Revises: 3f9c2a7d1e04
Create Date: 2026-10-26 14:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "8b41d0c6f2a9"
down_revision = "3f9c2a7d1e04"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "credit_subscriptions",
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "cost_alerts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("threshold_percent", sa.Integer(), nullable=True),
        sa.Column("limit_usd", sa.Numeric(12, 6), nullable=False),
        sa.Column("current_cost_usd", sa.Numeric(12, 6), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("window_resets_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["credit_balances.account_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_cost_alerts_account_id", "cost_alerts", ["account_id"])


def downgrade() -> None:
    op.drop_index("ix_cost_alerts_account_id", table_name="cost_alerts")
    op.drop_table("cost_alerts")
    op.drop_column("credit_subscriptions", "last_event_at")
