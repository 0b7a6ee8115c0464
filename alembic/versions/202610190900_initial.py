"""initial allocation schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


rule_type_enum = sa.Enum("percent", "fixed", name="ruletype")
plan_status_enum = sa.Enum("planned", "matched", "missed", name="incomeplanstatus")


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("bank", sa.String(length=120), nullable=False),
        sa.Column("number", sa.String(length=40)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "allocation_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("category", sa.String(length=40), nullable=False),
        sa.Column("rule_type", rule_type_enum, nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("value >= 0", name="ck_allocation_rule_value_positive"),
    )
    op.create_index(
        "ix_allocation_rules_user_priority",
        "allocation_rules",
        ["user_id", "priority", "id"],
    )

    op.create_table(
        "income_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("expected_date", sa.String(length=10), nullable=False),
        sa.Column("expected_amount", sa.Float(), nullable=False),
        sa.Column("label", sa.String(length=120), nullable=False),
        sa.Column("recurrence", sa.String(length=40), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("status", plan_status_enum, nullable=False),
        sa.Column("actual_amount", sa.Float()),
        sa.Column("matched_transaction_id", sa.Integer()),
        sa.Column("date_received", sa.String(length=10)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_income_plans_user_date", "income_plans", ["user_id", "expected_date"]
    )
    op.create_index(
        "ix_income_plans_user_status", "income_plans", ["user_id", "status"]
    )

    op.create_table(
        "allocation_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "income_plan_id",
            sa.Integer(),
            sa.ForeignKey("income_plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("rule_id", sa.Integer(), sa.ForeignKey("allocation_rules.id")),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("category", sa.String(length=40), nullable=False),
        sa.Column(
            "is_forecast", sa.Boolean(), nullable=False, server_default=sa.text("1")
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_allocation_records_plan", "allocation_records", ["income_plan_id"]
    )
    op.create_index(
        "ix_allocation_records_user_rule",
        "allocation_records",
        ["user_id", "rule_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_allocation_records_user_rule", table_name="allocation_records")
    op.drop_index("ix_allocation_records_plan", table_name="allocation_records")
    op.drop_table("allocation_records")

    op.drop_index("ix_income_plans_user_status", table_name="income_plans")
    op.drop_index("ix_income_plans_user_date", table_name="income_plans")
    op.drop_table("income_plans")

    op.drop_index("ix_allocation_rules_user_priority", table_name="allocation_rules")
    op.drop_table("allocation_rules")

    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
