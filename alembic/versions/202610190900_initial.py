"""initial schema

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

CATEGORY_VALUES = (
    "food",
    "transport",
    "shopping",
    "bills",
    "entertainment",
    "health",
    "general",
    "salary",
)


def upgrade():
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.Enum(*CATEGORY_VALUES, name="category"), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column(
            "source",
            sa.Enum(
                "web_chat",
                "web_chat_receipt",
                "cloud_chat",
                "cloud_chat_receipt",
                "api",
                "manual",
                name="transactionsource",
            ),
            nullable=False,
            server_default="manual",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_owner_occurred", "transactions", ["owner_id", "occurred_at"]
    )
    op.create_index(
        "ix_transactions_owner_type_category",
        "transactions",
        ["owner_id", "type", "category", "occurred_at"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column(
            "setup_completed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("setup_step", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "setup_step >= 0 AND setup_step <= 7", name="ck_budget_setup_step_range"
        ),
    )

    op.create_table(
        "budget_limits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category", sa.Enum(*CATEGORY_VALUES, name="category"), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("budget_id", "category", name="uq_budget_limit_category"),
        sa.CheckConstraint("limit_cents >= 0", name="ck_budget_limit_non_negative"),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("target_cents", sa.Integer(), nullable=False),
        sa.Column("current_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deadline", sa.Date()),
        sa.Column(
            "category",
            sa.Enum(
                "trip",
                "purchase",
                "emergency",
                "investment",
                "general",
                name="goalcategory",
            ),
            nullable=False,
            server_default="general",
        ),
        sa.Column(
            "status",
            sa.Enum("active", "completed", "cancelled", name="goalstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("weekly_target_cents", sa.Integer()),
        sa.Column("monthly_target_cents", sa.Integer()),
        sa.Column(
            "progress_percentage", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("target_cents > 0", name="ck_goals_target_positive"),
        sa.CheckConstraint("current_cents >= 0", name="ck_goals_current_non_negative"),
    )
    op.create_index("ix_goals_owner_status", "goals", ["owner_id", "status"])


def downgrade():
    op.drop_index("ix_goals_owner_status", table_name="goals")
    op.drop_table("goals")
    op.drop_table("budget_limits")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_owner_type_category", table_name="transactions")
    op.drop_index("ix_transactions_owner_occurred", table_name="transactions")
    op.drop_table("transactions")
