from decimal import ROUND_HALF_UP

from marshmallow import (
    EXCLUDE,
    Schema,
    ValidationError,
    fields,
    post_load,
    validates_schema,
)
from marshmallow.validate import Length, OneOf, Range

from models import ExpenseStatus, PayrollStatus, RoleEnum
from recurrence import ExpenseFrequency
from settlement import (
    CommissionMode,
    FinancialSummary,
    FixedExpenseBreakdown,
    UnifiedExpenses,
    classify_margin,
    round2,
)


def Money(**kwargs):
    return fields.Decimal(places=2, rounding=ROUND_HALF_UP, as_string=True, **kwargs)


def MoneyInput(**kwargs):
    kwargs.setdefault("allow_none", True)
    return fields.Decimal(**kwargs)


class InputSchema(Schema):
    class Meta:
        unknown = EXCLUDE


class UserSchema(Schema):
    id = fields.Int()
    name = fields.Str()
    email = fields.Str()
    role = fields.Enum(RoleEnum, by_value=True)
    active = fields.Bool()


class DriverSchema(Schema):
    id = fields.Int()
    name = fields.Str()


# --- daily records ---------------------------------------------------------

class DailyRecordInputSchema(InputSchema):
    date = fields.Date(required=True)
    driver_id = fields.Int(data_key="driverId", allow_none=True)
    start_km = fields.Int(data_key="startKm", allow_none=True)
    end_km = fields.Int(data_key="endKm", allow_none=True)
    cash_amount = MoneyInput(data_key="cashAmount")
    card_amount = MoneyInput(data_key="cardAmount")
    invoice_amount = MoneyInput(data_key="invoiceAmount")
    other_amount = MoneyInput(data_key="otherAmount")
    total_amount = MoneyInput(data_key="totalAmount")
    fuel_expense = MoneyInput(data_key="fuelExpense")
    other_expenses = MoneyInput(data_key="otherExpenses")
    other_expense_notes = fields.Str(data_key="otherExpenseNotes", allow_none=True)
    commission_mode = fields.Str(data_key="commissionMode", allow_none=True)
    commission_rate = MoneyInput(data_key="commissionRate")
    notes = fields.Str(allow_none=True)
    shift_start = fields.Str(data_key="shiftStart", allow_none=True, validate=Length(max=5))
    shift_end = fields.Str(data_key="shiftEnd", allow_none=True, validate=Length(max=5))
    break_start = fields.Str(data_key="breakStart", allow_none=True, validate=Length(max=5))
    break_end = fields.Str(data_key="breakEnd", allow_none=True, validate=Length(max=5))
    image_url = fields.Str(data_key="imageUrl", allow_none=True)


class DailyRecordSchema(Schema):
    id = fields.Int()
    date = fields.Date()
    driver_id = fields.Int(data_key="driverId")
    driver = fields.Nested(DriverSchema)
    start_km = fields.Int(data_key="startKm")
    end_km = fields.Int(data_key="endKm")
    total_km = fields.Int(data_key="totalKm")
    cash_amount = Money(data_key="cashAmount")
    card_amount = Money(data_key="cardAmount")
    invoice_amount = Money(data_key="invoiceAmount")
    other_amount = Money(data_key="otherAmount")
    total_amount = Money(data_key="totalAmount")
    fuel_expense = Money(data_key="fuelExpense")
    other_expenses = Money(data_key="otherExpenses")
    other_expense_notes = fields.Str(data_key="otherExpenseNotes", allow_none=True)
    commission_mode = fields.Enum(CommissionMode, by_value=True, data_key="commissionMode")
    commission_rate = fields.Decimal(as_string=True, data_key="commissionRate")
    driver_commission = Money(data_key="driverCommission")
    net_amount = Money(data_key="netAmount")
    notes = fields.Str(allow_none=True)
    shift_start = fields.Str(data_key="shiftStart", allow_none=True)
    shift_end = fields.Str(data_key="shiftEnd", allow_none=True)
    break_start = fields.Str(data_key="breakStart", allow_none=True)
    break_end = fields.Str(data_key="breakEnd", allow_none=True)
    image_url = fields.Str(data_key="imageUrl", allow_none=True)
    created_at = fields.DateTime(data_key="createdAt")
    updated_at = fields.DateTime(data_key="updatedAt")


class DailyRecordRevisionSchema(Schema):
    id = fields.Int()
    record_id = fields.Int(data_key="recordId")
    changed_by_id = fields.Int(data_key="changedById", allow_none=True)
    changed_at = fields.DateTime(data_key="changedAt")
    action = fields.Str()
    changes = fields.Dict()


# --- expenses --------------------------------------------------------------

class ExpenseInputSchema(InputSchema):
    date = fields.Date(required=True)
    category = fields.Str(required=True, validate=Length(min=1, max=100))
    description = fields.Str(required=True, validate=Length(min=1, max=255))
    amount = MoneyInput()
    tax_amount = MoneyInput(data_key="taxAmount")
    total_with_vat = MoneyInput(data_key="totalWithVat")
    is_recurring = fields.Bool(data_key="isRecurring")
    frequency = fields.Enum(ExpenseFrequency, by_value=True, allow_none=True)
    next_due_date = fields.Date(data_key="nextDueDate", allow_none=True)
    status = fields.Enum(ExpenseStatus, by_value=True)
    payment_date = fields.Date(data_key="paymentDate", allow_none=True)
    receipt_url = fields.Str(data_key="receiptUrl", allow_none=True)
    notes = fields.Str(allow_none=True)

    @validates_schema
    def validate_amounts(self, data, **kwargs):
        if kwargs.get("partial"):
            return
        if data.get("amount") is None and data.get("total_with_vat") is None:
            raise ValidationError("Provide amount or totalWithVat.", "amount")


class ExpenseSchema(Schema):
    id = fields.Int()
    date = fields.Date()
    category = fields.Str()
    description = fields.Str()
    amount = Money()
    tax_amount = Money(data_key="taxAmount")
    total_amount = Money(data_key="totalAmount")
    is_recurring = fields.Bool(data_key="isRecurring")
    frequency = fields.Enum(ExpenseFrequency, by_value=True, allow_none=True)
    next_due_date = fields.Date(data_key="nextDueDate", allow_none=True)
    status = fields.Enum(ExpenseStatus, by_value=True)
    payment_date = fields.Date(data_key="paymentDate", allow_none=True)
    receipt_url = fields.Str(data_key="receiptUrl", allow_none=True)
    notes = fields.Str(allow_none=True)
    source_expense_id = fields.Int(data_key="sourceExpenseId", allow_none=True)
    created_by_id = fields.Int(data_key="createdById", allow_none=True)


class ExpensePaymentSchema(InputSchema):
    is_paid = fields.Bool(data_key="isPaid", load_default=True)
    payment_date = fields.Date(data_key="paymentDate", allow_none=True)


# --- payroll ---------------------------------------------------------------

class PayrollInputSchema(InputSchema):
    user_id = fields.Int(data_key="userId", required=True)
    period_start = fields.Date(data_key="periodStart", required=True)
    period_end = fields.Date(data_key="periodEnd", required=True)
    base_salary = MoneyInput(data_key="baseSalary", validate=Range(min=0))
    commissions = MoneyInput(validate=Range(min=0))
    bonuses = MoneyInput(validate=Range(min=0))
    deductions = MoneyInput(validate=Range(min=0))
    tax_withholding = MoneyInput(data_key="taxWithholding", validate=Range(min=0))
    status = fields.Enum(PayrollStatus, by_value=True)
    payment_date = fields.DateTime(data_key="paymentDate", allow_none=True)
    pdf_url = fields.Str(data_key="pdfUrl", allow_none=True)
    notes = fields.Str(allow_none=True)

    @validates_schema
    def validate_period(self, data, **kwargs):
        start = data.get("period_start")
        end = data.get("period_end")
        if start and end and end < start:
            raise ValidationError("periodEnd must be on or after periodStart.", "periodEnd")


class PayrollSchema(Schema):
    id = fields.Int()
    user_id = fields.Int(data_key="userId")
    user = fields.Nested(DriverSchema)
    period_start = fields.Date(data_key="periodStart")
    period_end = fields.Date(data_key="periodEnd")
    base_salary = Money(data_key="baseSalary")
    commissions = Money()
    bonuses = Money()
    deductions = Money()
    tax_withholding = Money(data_key="taxWithholding")
    net_amount = Money(data_key="netAmount")
    status = fields.Enum(PayrollStatus, by_value=True)
    payment_date = fields.DateTime(data_key="paymentDate", allow_none=True)
    pdf_url = fields.Str(data_key="pdfUrl", allow_none=True)
    notes = fields.Str(allow_none=True)


# --- time entries ----------------------------------------------------------

class TimeEntryInputSchema(InputSchema):
    user_id = fields.Int(data_key="userId", allow_none=True)
    start_time = fields.DateTime(data_key="startTime")
    end_time = fields.DateTime(data_key="endTime", allow_none=True)
    break_time = fields.Int(data_key="breakTime", validate=Range(min=0))
    notes = fields.Str(allow_none=True)


class TimeEntrySchema(Schema):
    id = fields.Int()
    user_id = fields.Int(data_key="userId")
    user = fields.Nested(DriverSchema)
    start_time = fields.DateTime(data_key="startTime")
    end_time = fields.DateTime(data_key="endTime", allow_none=True)
    break_time = fields.Int(data_key="breakTime")
    total_minutes = fields.Int(data_key="totalMinutes", allow_none=True)
    notes = fields.Str(allow_none=True)
    is_active = fields.Bool(data_key="isActive", dump_only=True)


# --- configuration ---------------------------------------------------------

class ConfigurationSchema(InputSchema):
    key = fields.Str(required=True, validate=Length(min=1, max=100))
    value = fields.Raw(required=True)
    description = fields.Str(allow_none=True)
    updated_at = fields.DateTime(data_key="updatedAt", dump_only=True)


# --- financial summary -----------------------------------------------------

class FixedExpenseBreakdownSchema(Schema):
    seguridad_social = Money(data_key="seguridadSocial")
    cuota_autonomo = Money(data_key="cuotaAutonomo")
    cuota_agrupacion = Money(data_key="cuotaAgrupacion")
    gestoria = Money()
    seguros = Money()
    suministros = Money()
    otros = Money()

    @post_load
    def make_breakdown(self, data, **kwargs):
        return FixedExpenseBreakdown(**data)


class UnifiedExpensesSchema(Schema):
    monthly_fixed_expenses = fields.Nested(FixedExpenseBreakdownSchema, data_key="monthlyFixedExpenses")
    daily_operational_expenses = Money(data_key="dailyOperationalExpenses")
    variable_expenses = Money(data_key="variableExpenses")
    total_expenses = Money(data_key="totalExpenses")

    @post_load
    def make_unified(self, data, **kwargs):
        return UnifiedExpenses(**data)


class FinancialSummarySchema(Schema):
    """JSON shape of a period summary; loads back into :class:`FinancialSummary`."""

    class Meta:
        unknown = EXCLUDE

    total_income = Money(data_key="totalIncome", required=True)
    driver_commission = Money(data_key="driverCommission", required=True)
    base_salary = Money(data_key="baseSalary", required=True)
    nomina_real = Money(data_key="nominaReal", required=True)
    efectivo_adicional = Money(data_key="efectivoAdicional", required=True)
    unified_expenses = fields.Nested(UnifiedExpensesSchema, data_key="unifiedExpenses", required=True)
    real_net_profit = Money(data_key="realNetProfit", required=True)
    salary_shortfall = fields.Method("dump_shortfall", data_key="salaryShortfall", dump_only=True)
    margin = fields.Method("dump_margin", dump_only=True)

    def dump_shortfall(self, summary):
        return str(round2(summary.reconciliation.shortfall))

    def dump_margin(self, summary):
        margin = classify_margin(summary.total_income, summary.real_net_profit)
        return {
            "profitMarginPct": str(round2(margin.profit_margin_pct)),
            "isHealthy": margin.is_healthy,
        }

    @post_load
    def make_summary(self, data, **kwargs):
        return FinancialSummary(**data)


user_schema = UserSchema()
users_schema = UserSchema(many=True)
daily_record_input_schema = DailyRecordInputSchema()
daily_record_schema = DailyRecordSchema()
daily_records_schema = DailyRecordSchema(many=True)
revisions_schema = DailyRecordRevisionSchema(many=True)
expense_input_schema = ExpenseInputSchema()
expense_schema = ExpenseSchema()
expenses_schema = ExpenseSchema(many=True)
expense_payment_schema = ExpensePaymentSchema()
payroll_input_schema = PayrollInputSchema()
payroll_schema = PayrollSchema()
payrolls_schema = PayrollSchema(many=True)
time_entry_input_schema = TimeEntryInputSchema()
time_entry_schema = TimeEntrySchema()
time_entries_schema = TimeEntrySchema(many=True)
configuration_schema = ConfigurationSchema()
configurations_schema = ConfigurationSchema(many=True)
financial_summary_schema = FinancialSummarySchema()
