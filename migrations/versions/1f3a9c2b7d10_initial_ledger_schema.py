"""initial ledger schema

Revision ID: 1f3a9c2b7d10
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "1f3a9c2b7d10"
down_revision = None
branch_labels = None
depends_on = None


ROLE_ENUM = sa.Enum("admin", "driver", name="roleenum")
COMMISSION_MODE_ENUM = sa.Enum("gross", "post_expense", name="commissionmode")
EXPENSE_FREQUENCY_ENUM = sa.Enum("monthly", "quarterly", "biannual", "annual", name="expensefrequency")
EXPENSE_STATUS_ENUM = sa.Enum("pending", "approved", "completed", name="expensestatus")
PAYROLL_STATUS_ENUM = sa.Enum("pending", "paid", name="payrollstatus")


def _money(name, **kwargs):
    return sa.Column(name, sa.Numeric(12, 2), nullable=False, server_default="0", **kwargs)


def upgrade():
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=120), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=256), nullable=False),
        sa.Column("role", ROLE_ENUM, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=True),
    )

    op.create_table(
        "configuration",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(length=100), nullable=False, unique=True),
        sa.Column("value", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "daily_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("driver_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("start_km", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("end_km", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_km", sa.Integer(), nullable=False, server_default="0"),
        _money("cash_amount"),
        _money("card_amount"),
        _money("invoice_amount"),
        _money("other_amount"),
        _money("total_amount"),
        _money("fuel_expense"),
        _money("other_expenses"),
        sa.Column("other_expense_notes", sa.Text(), nullable=True),
        sa.Column("commission_mode", COMMISSION_MODE_ENUM, nullable=False, server_default="gross"),
        sa.Column("commission_rate", sa.Numeric(5, 4), nullable=False, server_default="0.35"),
        _money("driver_commission"),
        _money("net_amount"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("shift_start", sa.String(length=5), nullable=True),
        sa.Column("shift_end", sa.String(length=5), nullable=True),
        sa.Column("break_start", sa.String(length=5), nullable=True),
        sa.Column("break_end", sa.String(length=5), nullable=True),
        sa.Column("image_url", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("end_km >= start_km", name="ck_daily_records_km_order"),
    )
    op.create_index("ix_daily_records_date", "daily_records", ["date"])
    op.create_index("ix_daily_records_driver_id", "daily_records", ["driver_id"])

    op.create_table(
        "daily_record_revisions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "record_id",
            sa.Integer(),
            sa.ForeignKey("daily_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("changed_by_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("changes", sa.JSON(), nullable=False),
    )
    op.create_index("ix_daily_record_revisions_record_id", "daily_record_revisions", ["record_id"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        _money("amount"),
        _money("tax_amount"),
        _money("total_amount"),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("frequency", EXPENSE_FREQUENCY_ENUM, nullable=True),
        sa.Column("next_due_date", sa.Date(), nullable=True),
        sa.Column("status", EXPENSE_STATUS_ENUM, nullable=False, server_default="pending"),
        sa.Column("payment_date", sa.Date(), nullable=True),
        sa.Column("receipt_url", sa.String(length=500), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("source_expense_id", sa.Integer(), sa.ForeignKey("expenses.id"), nullable=True),
        sa.Column("created_by_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_expenses_date", "expenses", ["date"])
    op.create_index("ix_expenses_category", "expenses", ["category"])
    op.create_index("ix_expenses_is_recurring", "expenses", ["is_recurring"])

    op.create_table(
        "payrolls",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        _money("base_salary"),
        _money("commissions"),
        _money("bonuses"),
        _money("deductions"),
        _money("tax_withholding"),
        _money("net_amount"),
        sa.Column("status", PAYROLL_STATUS_ENUM, nullable=False, server_default="pending"),
        sa.Column("payment_date", sa.DateTime(), nullable=True),
        sa.Column("pdf_url", sa.String(length=500), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("period_end >= period_start", name="ck_payrolls_period_order"),
    )
    op.create_index("ix_payrolls_user_id", "payrolls", ["user_id"])
    op.create_index("ix_payrolls_period_end", "payrolls", ["period_end"])

    op.create_table(
        "time_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("start_time", sa.DateTime(), nullable=False),
        sa.Column("end_time", sa.DateTime(), nullable=True),
        sa.Column("break_time", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_minutes", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_time_entries_user_id", "time_entries", ["user_id"])
    op.create_index("ix_time_entries_start_time", "time_entries", ["start_time"])


def downgrade():
    op.drop_index("ix_time_entries_start_time", table_name="time_entries")
    op.drop_index("ix_time_entries_user_id", table_name="time_entries")
    op.drop_table("time_entries")
    op.drop_index("ix_payrolls_period_end", table_name="payrolls")
    op.drop_index("ix_payrolls_user_id", table_name="payrolls")
    op.drop_table("payrolls")
    op.drop_index("ix_expenses_is_recurring", table_name="expenses")
    op.drop_index("ix_expenses_category", table_name="expenses")
    op.drop_index("ix_expenses_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_daily_record_revisions_record_id", table_name="daily_record_revisions")
    op.drop_table("daily_record_revisions")
    op.drop_index("ix_daily_records_driver_id", table_name="daily_records")
    op.drop_index("ix_daily_records_date", table_name="daily_records")
    op.drop_table("daily_records")
    op.drop_table("configuration")
    op.drop_table("user")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum in (
            PAYROLL_STATUS_ENUM,
            EXPENSE_STATUS_ENUM,
            EXPENSE_FREQUENCY_ENUM,
            COMMISSION_MODE_ENUM,
            ROLE_ENUM,
        ):
            enum.drop(bind, checkfirst=True)
