"""initial schema

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
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("name", sa.String(length=200)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("key", sa.String(length=128), nullable=False, unique=True),
        sa.Column("account_number", sa.String(length=64)),
        sa.Column("iban", sa.String(length=64)),
        sa.Column("name", sa.String(length=200)),
        sa.Column("description", sa.String(length=200)),
        sa.Column("type", sa.String(length=64)),
        sa.Column("product_type", sa.String(length=64)),
        sa.Column("product_id", sa.String(length=64)),
        sa.Column("description_code", sa.String(length=64)),
        sa.Column("disposal_role", sa.String(length=64)),
        sa.Column("balance", sa.Numeric(15, 2)),
        sa.Column("available_balance", sa.Numeric(15, 2)),
        sa.Column("currency_code", sa.String(length=3)),
        sa.Column("owner", sa.JSON()),
        sa.Column("account_properties", sa.JSON()),
        sa.Column("synced_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("sparebank1_id", sa.String(length=128)),
        sa.Column("non_unique_id", sa.String(length=128)),
        sa.Column("description", sa.Text()),
        sa.Column("cleaned_description", sa.Text()),
        sa.Column("remote_account_number", sa.String(length=64)),
        sa.Column("remote_account_name", sa.String(length=200)),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("date", sa.BigInteger(), nullable=False),
        sa.Column("type_code", sa.String(length=32)),
        sa.Column("currency_code", sa.String(length=3)),
        sa.Column("can_show_details", sa.Boolean()),
        sa.Column("source", sa.String(length=16)),
        sa.Column("is_confidential", sa.Boolean()),
        sa.Column("booking_status", sa.String(length=16)),
        sa.Column("account_name", sa.String(length=200)),
        sa.Column("account_key", sa.String(length=128)),
        sa.Column("account_currency", sa.String(length=3)),
        sa.Column("is_from_currency_account", sa.Boolean()),
        sa.Column("kid_or_message", sa.Text()),
        sa.Column("account_number", sa.JSON()),
        sa.Column("classification_input", sa.JSON()),
        sa.Column("merchant", sa.JSON()),
        sa.Column("synced_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "date"]
    )
    op.create_index(
        "ix_transactions_user_natural_key",
        "transactions",
        ["user_id", "amount", "date", "description"],
    )
    op.create_index("ix_transactions_account", "transactions", ["account_id"])

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("color", sa.String(length=7)),
        sa.Column(
            "is_income", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id"),
            nullable=False,
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("budgeted_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column(
            "alert_percentage", sa.Integer(), nullable=False, server_default="80"
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "category_id",
            "month",
            "year",
            name="uq_budget_user_category_month",
        ),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "year", "month"])

    op.create_table(
        "monthly_budget_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("total_budget", sa.Numeric(15, 2), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "month", "year", name="uq_goal_user_month"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_goal_month_range"),
    )


def downgrade():
    op.drop_table("monthly_budget_goals")
    op.drop_index("ix_budget_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("budget_categories")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_user_natural_key", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("users")
