from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint

from extensions import db
from recurrence import ExpenseFrequency
from settlement import (
    CommissionMode,
    ShiftFigures,
    compute_daily_commission,
    payroll_net_amount,
    round2,
)
from werkzeug.security import generate_password_hash, check_password_hash


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class RoleEnum(str, Enum):
    admin = "admin"
    driver = "driver"


class ExpenseStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    completed = "completed"


class PayrollStatus(str, Enum):
    pending = "pending"
    paid = "paid"


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.Enum(RoleEnum), nullable=False, default=RoleEnum.driver)
    active = db.Column(db.Boolean, default=True)

    def set_password(self, pw): self.password_hash = generate_password_hash(pw)
    def check_password(self, pw): return check_password_hash(self.password_hash, pw)

    @property
    def is_admin(self) -> bool:
        return self.role == RoleEnum.admin


class Configuration(db.Model):
    __tablename__ = "configuration"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), nullable=False, unique=True)
    value = db.Column(db.String(255), nullable=False)
    description = db.Column(db.String(255))
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Fields whose change means the settlement must be recomputed.
SETTLEMENT_FIELDS = (
    "cash_amount",
    "card_amount",
    "invoice_amount",
    "other_amount",
    "fuel_expense",
    "other_expenses",
    "commission_mode",
    "commission_rate",
)


class DailyRecord(db.Model):
    """One driver's shift on one calendar date."""

    __tablename__ = "daily_records"
    __table_args__ = (
        CheckConstraint("end_km >= start_km", name="ck_daily_records_km_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, nullable=False, index=True)
    driver_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)

    start_km = db.Column(db.Integer, nullable=False, default=0)
    end_km = db.Column(db.Integer, nullable=False, default=0)
    total_km = db.Column(db.Integer, nullable=False, default=0)

    cash_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    card_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    invoice_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    other_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    fuel_expense = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    other_expenses = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    other_expense_notes = db.Column(db.Text)

    commission_mode = db.Column(
        db.Enum(CommissionMode, values_callable=_enum_values, name="commissionmode"),
        nullable=False,
        default=CommissionMode.gross,
    )
    commission_rate = db.Column(db.Numeric(5, 4), nullable=False, default=Decimal("0.35"))
    driver_commission = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    net_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    notes = db.Column(db.Text)
    shift_start = db.Column(db.String(5))
    shift_end = db.Column(db.String(5))
    break_start = db.Column(db.String(5))
    break_end = db.Column(db.String(5))
    image_url = db.Column(db.String(500))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    driver = db.relationship("User", foreign_keys=[driver_id])
    revisions = db.relationship(
        "DailyRecordRevision",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="DailyRecordRevision.id",
    )

    def apply_settlement(self) -> None:
        """Recompute derived totals, commission and net from the stored inputs."""

        figures = ShiftFigures.from_source(
            {
                "cash_amount": self.cash_amount,
                "card_amount": self.card_amount,
                "invoice_amount": self.invoice_amount,
                "other_amount": self.other_amount,
                "fuel_expense": self.fuel_expense,
                "other_expenses": self.other_expenses,
                "start_km": self.start_km,
                "end_km": self.end_km,
            }
        )
        result = compute_daily_commission(
            figures, mode=self.commission_mode, rate=self.commission_rate
        ).rounded()
        self.total_km = figures.total_km or 0
        self.total_amount = result.total_amount
        self.driver_commission = result.driver_commission
        self.net_amount = result.net_amount

    def snapshot(self) -> dict:
        values = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, Decimal):
                if column.key == "commission_rate":
                    value = str(value.quantize(Decimal("0.0001")))
                else:
                    value = str(round2(value))
            elif isinstance(value, Enum):
                value = value.value
            elif hasattr(value, "isoformat"):
                value = value.isoformat()
            values[column.key] = value
        return values


class DailyRecordRevision(db.Model):
    """Append-only change log for daily records."""

    __tablename__ = "daily_record_revisions"

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(
        db.Integer,
        db.ForeignKey("daily_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    changed_by_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    changed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    action = db.Column(db.String(16), nullable=False)
    changes = db.Column(db.JSON, nullable=False, default=dict)

    record = db.relationship("DailyRecord", back_populates="revisions")
    changed_by = db.relationship("User")


class Expense(db.Model):
    __tablename__ = "expenses"

    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, nullable=False, index=True)
    category = db.Column(db.String(100), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    is_recurring = db.Column(db.Boolean, nullable=False, default=False, index=True)
    frequency = db.Column(
        db.Enum(ExpenseFrequency, values_callable=_enum_values, name="expensefrequency"),
        nullable=True,
    )
    next_due_date = db.Column(db.Date, nullable=True)
    status = db.Column(
        db.Enum(ExpenseStatus, values_callable=_enum_values, name="expensestatus"),
        nullable=False,
        default=ExpenseStatus.pending,
    )
    payment_date = db.Column(db.Date, nullable=True)
    receipt_url = db.Column(db.String(500))
    notes = db.Column(db.Text)
    source_expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    created_by = db.relationship("User")

    def recalculate_total(self) -> None:
        self.total_amount = round2((self.amount or Decimal("0")) + (self.tax_amount or Decimal("0")))


class Payroll(db.Model):
    __tablename__ = "payrolls"
    __table_args__ = (
        CheckConstraint("period_end >= period_start", name="ck_payrolls_period_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False, index=True)
    base_salary = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    commissions = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    bonuses = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    deductions = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    tax_withholding = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    net_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    status = db.Column(
        db.Enum(PayrollStatus, values_callable=_enum_values, name="payrollstatus"),
        nullable=False,
        default=PayrollStatus.pending,
    )
    payment_date = db.Column(db.DateTime, nullable=True)
    pdf_url = db.Column(db.String(500))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship("User")

    def recalculate_net(self) -> None:
        self.net_amount = round2(
            payroll_net_amount(
                self.base_salary,
                self.commissions,
                self.bonuses,
                self.deductions,
                self.tax_withholding,
            )
        )


class TimeEntry(db.Model):
    __tablename__ = "time_entries"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime, nullable=True)
    break_time = db.Column(db.Integer, nullable=False, default=0)  # minutes
    total_minutes = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship("User")

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    def recalculate_minutes(self) -> None:
        if self.end_time is None or self.start_time is None:
            self.total_minutes = None
            return
        elapsed = int((self.end_time - self.start_time).total_seconds() // 60)
        self.total_minutes = elapsed - int(self.break_time or 0)
