"""initial forecast schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column(
            "nature",
            sa.Enum("asset", "liability", name="accountnature"),
            nullable=False,
        ),
        sa.Column(
            "initial_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("ledger_amount_cents", sa.Integer()),
        sa.Column("currency_code", sa.String(length=3)),
        sa.Column("category", sa.String(length=100)),
        sa.Column("description", sa.Text()),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )

    op.create_table(
        "forecast_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column(
            "type",
            sa.Enum("recurring", "one_off", "installment", "budget", name="ruletype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("category", sa.String(length=100)),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("frequency", sa.Enum("monthly", name="rulefrequency")),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column("installments_count", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "source_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            unique=True,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_forecast_rules_active_type", "forecast_rules", ["is_active", "type"]
    )
    op.create_index(
        "ix_forecast_rules_category_type", "forecast_rules", ["category", "type"]
    )

    op.create_table(
        "forecast_instances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "rule_id",
            sa.Integer(),
            sa.ForeignKey("forecast_rules.id"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer()),
        sa.Column(
            "status",
            sa.Enum("projected", "realized", "skipped", name="instancestatus"),
            nullable=False,
        ),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column(
            "split_from_id",
            sa.Integer(),
            sa.ForeignKey("forecast_instances.id", ondelete="SET NULL"),
        ),
        sa.Column("note", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    # Remainders from partial settlement share rule and date with their parent.
    op.create_index(
        "uq_forecast_instance_rule_date",
        "forecast_instances",
        ["rule_id", "date"],
        unique=True,
        sqlite_where=sa.text("split_from_id IS NULL"),
        postgresql_where=sa.text("split_from_id IS NULL"),
    )
    op.create_index("ix_forecast_instances_date", "forecast_instances", ["date"])
    op.create_index(
        "ix_forecast_instances_transaction", "forecast_instances", ["transaction_id"]
    )

    op.create_table(
        "cycles",
        sa.Column("key", sa.String(length=7), primary_key=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
    )


def downgrade():
    op.drop_table("cycles")
    op.drop_index("ix_forecast_instances_transaction", table_name="forecast_instances")
    op.drop_index("ix_forecast_instances_date", table_name="forecast_instances")
    op.drop_index("uq_forecast_instance_rule_date", table_name="forecast_instances")
    op.drop_table("forecast_instances")
    op.drop_index("ix_forecast_rules_category_type", table_name="forecast_rules")
    op.drop_index("ix_forecast_rules_active_type", table_name="forecast_rules")
    op.drop_table("forecast_rules")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("accounts")
