"""initial schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_TYPES = ("income", "expense", "transfer")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("icon", sa.String(length=50)),
        sa.Column("icon_color", sa.String(length=20)),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index(
        "ix_accounts_deleted_order", "accounts", ["deleted_at", "display_order"]
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False
        ),
        sa.Column("note", sa.Text()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=50), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False
        ),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "destination_account_id", sa.Integer(), sa.ForeignKey("accounts.id")
        ),
        sa.Column("note", sa.Text()),
        sa.Column("latitude", sa.Float()),
        sa.Column("longitude", sa.Float()),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "(latitude IS NULL) = (longitude IS NULL)",
            name="ck_transactions_coordinates_paired",
        ),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index(
        "ix_transactions_destination_date",
        "transactions",
        ["destination_account_id", "date"],
    )
    op.create_index(
        "ix_transactions_category_date", "transactions", ["category_id", "date"]
    )
    op.create_index("ix_transactions_type_date", "transactions", ["type", "date"])

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "transaction_relations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            nullable=False,
        ),
        sa.Column(
            "related_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "transaction_id", "related_transaction_id", name="uq_transaction_relation"
        ),
        sa.CheckConstraint(
            "transaction_id < related_transaction_id",
            name="ck_transaction_relation_ordered",
        ),
    )

    op.create_table(
        "budget_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("amount_limit", sa.Integer(), nullable=False),
        sa.Column(
            "recurrence",
            sa.Enum("none", "weekly", "monthly", "yearly", name="budgetrecurrence"),
            nullable=False,
            server_default="none",
        ),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime()),
        sa.Column("note", sa.Text()),
        sa.Column("last_executed_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_limit > 0", name="ck_budget_templates_limit_positive"
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("template_id", sa.Integer(), sa.ForeignKey("budget_templates.id")),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("amount_limit", sa.Integer(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_limit > 0", name="ck_budgets_limit_positive"),
        sa.CheckConstraint(
            "period_start <= period_end", name="ck_budgets_period_order"
        ),
    )
    op.create_index("ix_budgets_period", "budgets", ["period_start", "period_end"])

    op.create_table(
        "transaction_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "destination_account_id", sa.Integer(), sa.ForeignKey("accounts.id")
        ),
        sa.Column(
            "recurrence",
            sa.Enum(
                "none",
                "daily",
                "weekly",
                "monthly",
                "yearly",
                name="templaterecurrence",
            ),
            nullable=False,
            server_default="none",
        ),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime()),
        sa.Column("installment_count", sa.Integer()),
        sa.Column(
            "installment_current", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("note", sa.Text()),
        sa.Column("last_executed_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint(
            "amount > 0", name="ck_transaction_templates_amount_positive"
        ),
    )

    op.create_table(
        "transaction_template_relations",
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("transaction_templates.id"),
            primary_key=True,
        ),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            primary_key=True,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table("transaction_template_relations")
    op.drop_table("transaction_templates")
    op.drop_index("ix_budgets_period", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("budget_templates")
    op.drop_table("transaction_relations")
    op.drop_table("transaction_tags")
    op.drop_index("ix_transactions_type_date", table_name="transactions")
    op.drop_index("ix_transactions_category_date", table_name="transactions")
    op.drop_index("ix_transactions_destination_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("tags")
    op.drop_table("categories")
    op.drop_index("ix_accounts_deleted_order", table_name="accounts")
    op.drop_table("accounts")
