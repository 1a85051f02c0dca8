"""create cashflow tables

Revision ID: 7a3e91c0d2f4
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "7a3e91c0d2f4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


CASHFLOW_TYPE = sa.Enum("INFLOW", "OUTFLOW", name="cashflow_type")
RECURRENCE = sa.Enum("NONE", "DAILY", "WEEKLY", "MONTHLY", "QUARTERLY", "YEARLY", name="recurrence")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        "userprofile",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("display_name", sa.String(length=100), nullable=True),
        sa.Column("base_currency", sa.String(length=3), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ),
    )
    op.create_table(
        "account",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("initial_balance", sa.Numeric(18, 4), nullable=False),
        sa.Column("current_balance", sa.Numeric(18, 4), nullable=False),
        sa.Column("is_excluded", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ),
        sa.UniqueConstraint("user_id", "name", name="uq_account_name"),
    )
    op.create_table(
        "account_balance",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("delta", sa.Numeric(18, 4), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["account.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ),
        sa.UniqueConstraint("account_id", "date", name="uq_account_balance_date"),
    )
    op.create_table(
        "recurrence_template",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 4), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("type", CASHFLOW_TYPE, nullable=False),
        sa.Column("recurrence", RECURRENCE, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("last_materialized_at", sa.Date(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ),
        sa.ForeignKeyConstraint(["account_id"], ["account.id"], ),
        sa.CheckConstraint("amount >= 0", name="ck_template_amount_non_negative"),
    )
    op.create_index("ix_template_window", "recurrence_template", ["start_date", "end_date"], unique=False)
    op.create_table(
        "cashflow_entry",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 4), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("type", CASHFLOW_TYPE, nullable=False),
        sa.Column("occurred_at", sa.Date(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("template_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ),
        sa.ForeignKeyConstraint(["account_id"], ["account.id"], ),
        sa.ForeignKeyConstraint(["template_id"], ["recurrence_template.id"], ondelete="SET NULL"),
        sa.CheckConstraint("amount >= 0", name="ck_entry_amount_non_negative"),
        sa.UniqueConstraint("template_id", "occurred_at", name="uq_entry_template_date"),
    )
    op.create_index("ix_entry_user_date", "cashflow_entry", ["user_id", "occurred_at"], unique=False)
    op.create_index("ix_entry_account_date", "cashflow_entry", ["account_id", "occurred_at"], unique=False)
    op.create_table(
        "exchange_rate",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base", sa.String(length=3), nullable=False),
        sa.Column("quote", sa.String(length=3), nullable=False),
        sa.Column("rate", sa.Numeric(18, 8), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.UniqueConstraint("base", "quote", "date", name="uq_fx_snapshot"),
    )


def downgrade() -> None:
    op.drop_table("exchange_rate")
    op.drop_index("ix_entry_account_date", table_name="cashflow_entry")
    op.drop_index("ix_entry_user_date", table_name="cashflow_entry")
    op.drop_table("cashflow_entry")
    op.drop_index("ix_template_window", table_name="recurrence_template")
    op.drop_table("recurrence_template")
    op.drop_table("account_balance")
    op.drop_table("account")
    op.drop_table("userprofile")
    op.drop_table("user")
    CASHFLOW_TYPE.drop(op.get_bind(), checkfirst=True)
    RECURRENCE.drop(op.get_bind(), checkfirst=True)
