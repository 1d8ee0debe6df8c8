"""Daily settlement calculations for shift records, expenses and payroll.

Everything in this module is pure: callers fetch rows from the database and
hand them in, and get fresh value objects back. Inputs can be ORM rows,
plain mappings or any object exposing the expected attribute names.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Iterable, Mapping, Optional


CENT = Decimal("0.01")
ZERO = Decimal("0")

DEFAULT_COMMISSION_RATE = Decimal("0.35")
DEFAULT_BASE_SALARY = Decimal("1400")
VAT_RATE = Decimal("0.21")

# Margin above which a period is reported as healthy (percent).
HEALTHY_MARGIN_PCT = Decimal("15")

FUEL_CATEGORY = "Combustible"


class SettlementValidationError(ValueError):
    """Raised when settlement input is structurally invalid."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class CommissionMode(str, Enum):
    """How the driver's share of a shift is computed."""

    gross = "gross"
    post_expense = "post_expense"


def round2(value: Any) -> Decimal:
    """Round to cents using half-up, never returning ``-0.00``."""

    quantized = to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    if quantized == ZERO:
        return Decimal("0.00")
    return quantized


def to_decimal(value: Any, field: str = "value") -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None:
        raise SettlementValidationError(field, "is required")
    if isinstance(value, bool):
        raise SettlementValidationError(field, "must be numeric")
    if isinstance(value, float):
        value = repr(value)
    text = str(value).strip()
    if not text:
        raise SettlementValidationError(field, "is required")
    try:
        result = Decimal(text)
    except (InvalidOperation, ValueError) as exc:
        raise SettlementValidationError(field, "must be numeric") from exc
    if not result.is_finite():
        raise SettlementValidationError(field, "must be a finite number")
    return result


def _read(source: Any, name: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(name)
    return getattr(source, name, None)


def _money(source: Any, name: str, *, required: bool = False) -> Decimal:
    raw = _read(source, name)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if required:
            raise SettlementValidationError(name, "is required")
        return ZERO
    value = to_decimal(raw, name)
    if value < 0:
        raise SettlementValidationError(name, "must not be negative")
    return value


def _kilometers(source: Any, name: str) -> Optional[int]:
    raw = _read(source, name)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    value = to_decimal(raw, name)
    if value < 0:
        raise SettlementValidationError(name, "must not be negative")
    if value != value.to_integral_value():
        raise SettlementValidationError(name, "must be a whole number")
    return int(value)


@dataclass(frozen=True)
class ShiftFigures:
    """Validated money and odometer figures of one shift."""

    cash_amount: Decimal
    card_amount: Decimal = ZERO
    invoice_amount: Decimal = ZERO
    other_amount: Decimal = ZERO
    fuel_expense: Decimal = ZERO
    other_expenses: Decimal = ZERO
    start_km: Optional[int] = None
    end_km: Optional[int] = None

    @property
    def total_amount(self) -> Decimal:
        return self.cash_amount + self.card_amount + self.invoice_amount + self.other_amount

    @property
    def total_expenses(self) -> Decimal:
        return self.fuel_expense + self.other_expenses

    @property
    def total_km(self) -> Optional[int]:
        if self.start_km is None or self.end_km is None:
            return None
        return self.end_km - self.start_km

    @classmethod
    def from_source(cls, source: Any) -> "ShiftFigures":
        """Build figures from a mapping or object with snake_case names.

        ``cash_amount`` is required unless ``total_amount`` is given, in which
        case cash is whatever the other channels do not explain.
        """

        card = _money(source, "card_amount")
        invoice = _money(source, "invoice_amount")
        other = _money(source, "other_amount")

        if _read(source, "cash_amount") is None and _read(source, "total_amount") is not None:
            total = _money(source, "total_amount", required=True)
            cash = total - card - invoice - other
            if cash < 0:
                raise SettlementValidationError(
                    "total_amount", "is lower than the sum of card, invoice and other income"
                )
        else:
            cash = _money(source, "cash_amount", required=True)

        start_km = _kilometers(source, "start_km")
        end_km = _kilometers(source, "end_km")
        if start_km is not None and end_km is not None and end_km < start_km:
            raise SettlementValidationError("end_km", "must be greater than or equal to start_km")

        return cls(
            cash_amount=cash,
            card_amount=card,
            invoice_amount=invoice,
            other_amount=other,
            fuel_expense=_money(source, "fuel_expense"),
            other_expenses=_money(source, "other_expenses"),
            start_km=start_km,
            end_km=end_km,
        )


@dataclass(frozen=True)
class CommissionResult:
    mode: CommissionMode
    rate: Decimal
    total_amount: Decimal
    total_expenses: Decimal
    driver_commission: Decimal
    net_amount: Decimal

    def rounded(self) -> "CommissionResult":
        """Values as persisted on a record.

        The commission is rounded first and the net is derived from the
        rounded commission, so ``net + commission + expenses == total``.
        """

        commission = round2(self.driver_commission)
        net = round2(self.total_amount - commission - self.total_expenses)
        if self.total_amount == ZERO:
            commission = net = Decimal("0.00")
        return CommissionResult(
            mode=self.mode,
            rate=self.rate,
            total_amount=round2(self.total_amount),
            total_expenses=round2(self.total_expenses),
            driver_commission=commission,
            net_amount=net,
        )


def compute_daily_commission(
    figures: ShiftFigures | Any,
    *,
    mode: CommissionMode | str,
    rate: Decimal | str | float = DEFAULT_COMMISSION_RATE,
) -> CommissionResult:
    """Driver commission and company net for a single shift."""

    if not isinstance(figures, ShiftFigures):
        figures = ShiftFigures.from_source(figures)
    try:
        mode = CommissionMode(mode)
    except ValueError as exc:
        raise SettlementValidationError("commission_mode", f"unknown mode {mode!r}") from exc

    rate = to_decimal(rate, "commission_rate")
    if rate < 0 or rate > 1:
        raise SettlementValidationError("commission_rate", "must be between 0 and 1")

    total = figures.total_amount
    expenses = figures.total_expenses

    if total == ZERO:
        return CommissionResult(mode, rate, ZERO, expenses, ZERO, ZERO)

    if mode is CommissionMode.gross:
        commission = total * rate
        net = total - commission - expenses
    else:
        commission = (total - expenses) * rate
        net = total - expenses - commission

    return CommissionResult(mode, rate, total, expenses, commission, net)


# --- period aggregation -----------------------------------------------------

FIXED_BUCKETS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("seguridad_social", "Seguridad Social", ("seguridad social",)),
    ("cuota_autonomo", "Cuota Autónomo", ("cuota autonomo",)),
    ("cuota_agrupacion", "Cuota Agrupación", ("cuota agrupacion",)),
    ("gestoria", "Gestoría", ("gestoria",)),
    ("seguros", "Seguros", ("seguros",)),
    ("suministros", "Suministros", ("suministros",)),
)

FIXED_CATEGORY_NAMES = tuple(label for _, label, _ in FIXED_BUCKETS)


def normalize_category(value: Any) -> str:
    text = unicodedata.normalize("NFKD", str(value or ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return " ".join(text.lower().split())


_BUCKET_LOOKUP = {alias: key for key, _, aliases in FIXED_BUCKETS for alias in aliases}


def fixed_bucket_for(category: Any) -> str:
    return _BUCKET_LOOKUP.get(normalize_category(category), "otros")


def is_fixed_category(category: Any) -> bool:
    return normalize_category(category) in _BUCKET_LOOKUP


@dataclass(frozen=True)
class FixedExpenseBreakdown:
    seguridad_social: Decimal = ZERO
    cuota_autonomo: Decimal = ZERO
    cuota_agrupacion: Decimal = ZERO
    gestoria: Decimal = ZERO
    seguros: Decimal = ZERO
    suministros: Decimal = ZERO
    otros: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return (
            self.seguridad_social
            + self.cuota_autonomo
            + self.cuota_agrupacion
            + self.gestoria
            + self.seguros
            + self.suministros
            + self.otros
        )


@dataclass(frozen=True)
class UnifiedExpenses:
    monthly_fixed_expenses: FixedExpenseBreakdown = field(default_factory=FixedExpenseBreakdown)
    daily_operational_expenses: Decimal = ZERO
    variable_expenses: Decimal = ZERO
    total_expenses: Decimal = ZERO


@dataclass(frozen=True)
class SalaryReconciliation:
    base_salary: Decimal
    nomina_real: Decimal
    efectivo_adicional: Decimal

    @property
    def shortfall(self) -> Decimal:
        """How far the commission falls short of the base salary."""

        return self.base_salary - self.nomina_real if self.nomina_real < self.base_salary else ZERO


@dataclass(frozen=True)
class MarginClassification:
    profit_margin_pct: Decimal
    is_healthy: bool


@dataclass(frozen=True)
class FinancialSummary:
    total_income: Decimal
    driver_commission: Decimal
    base_salary: Decimal
    nomina_real: Decimal
    efectivo_adicional: Decimal
    unified_expenses: UnifiedExpenses
    real_net_profit: Decimal

    @property
    def reconciliation(self) -> SalaryReconciliation:
        return SalaryReconciliation(self.base_salary, self.nomina_real, self.efectivo_adicional)

    @property
    def margin(self) -> MarginClassification:
        return classify_margin(self.total_income, self.real_net_profit)


def reconcile_salary(driver_commission: Any, base_salary: Any) -> SalaryReconciliation:
    commission = to_decimal(driver_commission, "driver_commission")
    base = to_decimal(base_salary, "base_salary")
    if base < 0:
        raise SettlementValidationError("base_salary", "must not be negative")
    return SalaryReconciliation(
        base_salary=base,
        nomina_real=min(commission, base),
        efectivo_adicional=max(ZERO, commission - base),
    )


def classify_margin(total_income: Any, real_net_profit: Any) -> MarginClassification:
    income = to_decimal(total_income, "total_income")
    profit = to_decimal(real_net_profit, "real_net_profit")
    if income == ZERO:
        return MarginClassification(Decimal("0"), False)
    pct = profit / income * 100
    return MarginClassification(pct, pct > HEALTHY_MARGIN_PCT)


def _is_recurring(expense: Any) -> bool:
    return bool(_read(expense, "is_recurring"))


def validate_expense(expense: Any) -> None:
    _money(expense, "amount", required=True)
    if _is_recurring(expense):
        if not _read(expense, "frequency"):
            raise SettlementValidationError("frequency", "is required for recurring expenses")
        if not _read(expense, "next_due_date"):
            raise SettlementValidationError("next_due_date", "is required for recurring expenses")


def partition_expenses(expenses: Iterable[Any]) -> tuple[list[Any], list[Any]]:
    """Split expenses into (fixed, variable).

    Fixed means recurring or booked under one of the fixed categories.
    Variable excludes fuel, which is only counted from daily records.
    """

    fixed: list[Any] = []
    variable: list[Any] = []
    fuel = normalize_category(FUEL_CATEGORY)
    for expense in expenses:
        category = _read(expense, "category")
        if _is_recurring(expense) or is_fixed_category(category):
            fixed.append(expense)
        elif normalize_category(category) != fuel:
            variable.append(expense)
    return fixed, variable


def aggregate_period(
    records: Iterable[Any],
    fixed_expenses: Iterable[Any],
    variable_expenses: Iterable[Any],
    base_salary: Any = DEFAULT_BASE_SALARY,
) -> FinancialSummary:
    """Fold a period's records and expenses into a :class:`FinancialSummary`.

    Commission is summed from the values stored on each record, never
    recomputed, so records settled under different modes or rates keep
    their historical amounts.
    """

    total_income = ZERO
    commission = ZERO
    operational = ZERO
    for record in records:
        total_income += _money(record, "total_amount", required=True)
        raw_commission = _read(record, "driver_commission")
        if raw_commission is None:
            raise SettlementValidationError("driver_commission", "is required")
        commission += to_decimal(raw_commission, "driver_commission")
        operational += _money(record, "fuel_expense") + _money(record, "other_expenses")

    buckets = {key: ZERO for key, _, _ in FIXED_BUCKETS}
    buckets["otros"] = ZERO
    for expense in fixed_expenses:
        validate_expense(expense)
        buckets[fixed_bucket_for(_read(expense, "category"))] += _money(expense, "amount", required=True)
    fixed = FixedExpenseBreakdown(**buckets)

    variable = ZERO
    for expense in variable_expenses:
        variable += _money(expense, "amount", required=True)

    total_expenses = operational + fixed.total + variable
    reconciliation = reconcile_salary(commission, base_salary)

    return FinancialSummary(
        total_income=total_income,
        driver_commission=commission,
        base_salary=reconciliation.base_salary,
        nomina_real=reconciliation.nomina_real,
        efectivo_adicional=reconciliation.efectivo_adicional,
        unified_expenses=UnifiedExpenses(
            monthly_fixed_expenses=fixed,
            daily_operational_expenses=operational,
            variable_expenses=variable,
            total_expenses=total_expenses,
        ),
        real_net_profit=total_income - commission - total_expenses,
    )


# --- expenses and payroll ---------------------------------------------------

def split_vat(total: Any, rate: Any = VAT_RATE) -> tuple[Decimal, Decimal]:
    """Return ``(amount, tax_amount)`` for a VAT-inclusive total."""

    gross = to_decimal(total, "total_amount")
    if gross < 0:
        raise SettlementValidationError("total_amount", "must not be negative")
    base = round2(gross / (1 + to_decimal(rate, "vat_rate")))
    return base, gross - base


def payroll_net_amount(
    base_salary: Any = ZERO,
    commissions: Any = ZERO,
    bonuses: Any = ZERO,
    deductions: Any = ZERO,
    tax_withholding: Any = ZERO,
) -> Decimal:
    values = {
        "base_salary": base_salary,
        "commissions": commissions,
        "bonuses": bonuses,
        "deductions": deductions,
        "tax_withholding": tax_withholding,
    }
    parsed = {name: _money(values, name) for name in values}
    return (
        parsed["base_salary"]
        + parsed["commissions"]
        + parsed["bonuses"]
        - parsed["deductions"]
        - parsed["tax_withholding"]
    )


def resolve_base_salary(payroll: Any, default: Any = DEFAULT_BASE_SALARY) -> Decimal:
    """Base salary of a finalised payroll, or ``default`` when there is none."""

    if payroll is None:
        return to_decimal(default, "base_salary")
    return _money(payroll, "base_salary", required=True)


__all__ = [
    "CommissionMode",
    "CommissionResult",
    "DEFAULT_BASE_SALARY",
    "DEFAULT_COMMISSION_RATE",
    "FIXED_CATEGORY_NAMES",
    "FUEL_CATEGORY",
    "FinancialSummary",
    "FixedExpenseBreakdown",
    "HEALTHY_MARGIN_PCT",
    "MarginClassification",
    "SalaryReconciliation",
    "SettlementValidationError",
    "ShiftFigures",
    "UnifiedExpenses",
    "VAT_RATE",
    "aggregate_period",
    "classify_margin",
    "compute_daily_commission",
    "partition_expenses",
    "payroll_net_amount",
    "reconcile_salary",
    "resolve_base_salary",
    "round2",
    "split_vat",
    "to_decimal",
    "validate_expense",
]
