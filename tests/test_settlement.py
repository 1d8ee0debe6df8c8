from dataclasses import replace
from decimal import Decimal

import pytest

from schemas import FinancialSummarySchema
from settlement import (
    CommissionMode,
    FixedExpenseBreakdown,
    HEALTHY_MARGIN_PCT,
    SettlementValidationError,
    ShiftFigures,
    aggregate_period,
    classify_margin,
    compute_daily_commission,
    fixed_bucket_for,
    is_fixed_category,
    partition_expenses,
    payroll_net_amount,
    reconcile_salary,
    resolve_base_salary,
    round2,
    split_vat,
    validate_expense,
)

D = Decimal


def _settled_record(total="200", fuel="20", other="5", mode=CommissionMode.gross, rate="0.35"):
    figures = ShiftFigures.from_source(
        {"cash_amount": total, "fuel_expense": fuel, "other_expenses": other}
    )
    result = compute_daily_commission(figures, mode=mode, rate=rate).rounded()
    return {
        "total_amount": result.total_amount,
        "fuel_expense": figures.fuel_expense,
        "other_expenses": figures.other_expenses,
        "driver_commission": result.driver_commission,
        "net_amount": result.net_amount,
    }


@pytest.mark.parametrize(
    "cash,card,invoice,other,expected",
    [
        ("100", "50", "25", "5", D("180")),
        ("0", "0", "0", "0", D("0")),
        ("12.34", "0.66", None, None, D("13.00")),
    ],
)
def test_total_is_sum_of_payment_channels(cash, card, invoice, other, expected):
    figures = ShiftFigures.from_source(
        {"cash_amount": cash, "card_amount": card, "invoice_amount": invoice, "other_amount": other}
    )
    assert figures.total_amount == expected
    assert figures.total_amount == (
        figures.cash_amount + figures.card_amount + figures.invoice_amount + figures.other_amount
    )


def test_cash_is_derived_when_only_total_is_given():
    figures = ShiftFigures.from_source({"total_amount": "150", "card_amount": "40"})
    assert figures.cash_amount == D("110")
    assert figures.total_amount == D("150")


def test_total_lower_than_other_channels_is_rejected():
    with pytest.raises(SettlementValidationError) as excinfo:
        ShiftFigures.from_source({"total_amount": "10", "card_amount": "40"})
    assert excinfo.value.field == "total_amount"


@pytest.mark.parametrize(
    "source,field",
    [
        ({}, "cash_amount"),
        ({"cash_amount": "abc"}, "cash_amount"),
        ({"cash_amount": "-1"}, "cash_amount"),
        ({"cash_amount": "10", "fuel_expense": "-2"}, "fuel_expense"),
        ({"cash_amount": "10", "start_km": "-5", "end_km": "10"}, "start_km"),
        ({"cash_amount": "10", "start_km": "100", "end_km": "90"}, "end_km"),
        ({"cash_amount": "NaN"}, "cash_amount"),
        ({"cash_amount": True}, "cash_amount"),
    ],
)
def test_invalid_shift_input_names_the_field(source, field):
    with pytest.raises(SettlementValidationError) as excinfo:
        ShiftFigures.from_source(source)
    assert excinfo.value.field == field


def test_optional_channels_and_expenses_default_to_zero():
    figures = ShiftFigures.from_source({"cash_amount": "80"})
    assert figures.card_amount == D("0")
    assert figures.total_expenses == D("0")
    assert figures.total_km is None


def test_kilometers_are_derived_from_odometer():
    figures = ShiftFigures.from_source({"cash_amount": "1", "start_km": 1200, "end_km": 1350})
    assert figures.total_km == 150


@pytest.mark.parametrize(
    "total,fuel,other",
    [("200", "20", "5"), ("137.45", "31.10", "0"), ("99.99", "0", "12.5"), ("0.03", "0", "0")],
)
def test_gross_commission_matches_formula(total, fuel, other):
    record = _settled_record(total, fuel, other, CommissionMode.gross)
    total_d = D(total)
    assert record["driver_commission"] == round2(total_d * D("0.35"))
    assert record["net_amount"] == round2(
        total_d - record["driver_commission"] - (D(fuel) + D(other))
    )


@pytest.mark.parametrize(
    "total,fuel,other",
    [("200", "20", "5"), ("137.45", "31.10", "0"), ("99.99", "0", "12.5")],
)
def test_post_expense_commission_matches_formula(total, fuel, other):
    record = _settled_record(total, fuel, other, CommissionMode.post_expense)
    expenses = D(fuel) + D(other)
    assert record["driver_commission"] == round2((D(total) - expenses) * D("0.35"))
    assert record["net_amount"] == round2(D(total) - expenses - record["driver_commission"])


def test_rounded_parts_add_back_to_total():
    record = _settled_record("33.33", "1.11", "0.01")
    assert (
        record["driver_commission"]
        + record["net_amount"]
        + record["fuel_expense"]
        + record["other_expenses"]
        == record["total_amount"]
    )


def test_zero_total_gives_exact_zeros():
    result = compute_daily_commission(
        {"cash_amount": "0", "fuel_expense": "12"}, mode=CommissionMode.post_expense
    ).rounded()
    assert result.driver_commission == D("0.00")
    assert result.net_amount == D("0.00")
    assert str(result.driver_commission) == "0.00"
    assert str(result.net_amount) == "0.00"


def test_post_expense_commission_can_be_negative():
    result = compute_daily_commission(
        {"cash_amount": "50", "fuel_expense": "70"}, mode="post_expense"
    ).rounded()
    assert result.driver_commission == D("-7.00")
    assert result.net_amount == D("-13.00")


def test_mode_is_required_and_validated():
    with pytest.raises(TypeError):
        compute_daily_commission({"cash_amount": "10"})  # type: ignore[call-arg]
    with pytest.raises(SettlementValidationError):
        compute_daily_commission({"cash_amount": "10"}, mode="net")
    with pytest.raises(SettlementValidationError):
        compute_daily_commission({"cash_amount": "10"}, mode="gross", rate="1.5")


def test_round2_is_half_up_without_negative_zero():
    assert round2("2.675") == D("2.68")
    assert round2("0.005") == D("0.01")
    assert str(round2("-0.001")) == "0.00"


def test_empty_aggregation_is_all_zero():
    summary = aggregate_period([], [], [])
    assert summary.total_income == 0
    assert summary.driver_commission == 0
    assert summary.unified_expenses.total_expenses == 0
    assert summary.real_net_profit == 0
    assert summary.unified_expenses.monthly_fixed_expenses == FixedExpenseBreakdown()


def test_empty_records_with_expenses_is_a_loss():
    summary = aggregate_period([], [{"category": "Gestoría", "amount": "80"}], [])
    assert summary.real_net_profit == D("-80")


def test_five_record_scenario():
    records = [_settled_record() for _ in range(5)]
    for record in records:
        assert record["driver_commission"] == D("70.00")
        assert record["net_amount"] == D("105.00")

    summary = aggregate_period(records, [], [])
    assert summary.total_income == D("1000")
    assert summary.driver_commission == D("350")
    assert summary.unified_expenses.daily_operational_expenses == D("125")
    assert summary.real_net_profit == D("1000") - D("350") - D("125")
    assert summary.nomina_real == D("350")
    assert summary.efectivo_adicional == D("0")


def test_aggregation_is_additive_except_reconciliation():
    a = _settled_record("3000", "100", "0")
    b = _settled_record("2000", "50", "10")
    fixed = [{"category": "Seguros", "amount": "90"}]

    combined = aggregate_period([a, b], fixed, [])
    only_a = aggregate_period([a], fixed, [])
    only_b = aggregate_period([b], [], [])

    assert combined.total_income == only_a.total_income + only_b.total_income
    assert combined.driver_commission == only_a.driver_commission + only_b.driver_commission
    assert (
        combined.unified_expenses.total_expenses
        == only_a.unified_expenses.total_expenses + only_b.unified_expenses.total_expenses
    )
    assert combined.real_net_profit == only_a.real_net_profit + only_b.real_net_profit

    # a: 1050 commission, b: 700 commission, base 1400.
    assert only_a.nomina_real + only_b.nomina_real == D("1750")
    assert combined.nomina_real == D("1400")
    assert only_a.efectivo_adicional + only_b.efectivo_adicional == D("0")
    assert combined.efectivo_adicional == D("350")


def test_aggregation_sums_stored_commission_instead_of_recomputing():
    gross = _settled_record("100", "10", "0", CommissionMode.gross)
    post = _settled_record("100", "10", "0", CommissionMode.post_expense)
    summary = aggregate_period([gross, post], [], [])
    assert summary.driver_commission == D("35.00") + D("31.50")


def test_aggregation_requires_stored_commission():
    with pytest.raises(SettlementValidationError) as excinfo:
        aggregate_period([{"total_amount": "100"}], [], [])
    assert excinfo.value.field == "driver_commission"


def test_fixed_expenses_are_bucketed_case_and_accent_insensitively():
    fixed = [
        {"category": "Seguridad Social", "amount": "300"},
        {"category": "cuota autonomo", "amount": "290"},
        {"category": "CUOTA AGRUPACIÓN", "amount": "45"},
        {"category": "Gestoria", "amount": "60"},
        {"category": "seguros", "amount": "120"},
        {"category": "Suministros", "amount": "30"},
        {"category": "Alquiler licencia", "amount": "200", "is_recurring": True,
         "frequency": "monthly", "next_due_date": "2024-06-01"},
    ]
    summary = aggregate_period([], fixed, [{"category": "Reparación", "amount": "75"}])
    breakdown = summary.unified_expenses.monthly_fixed_expenses
    assert breakdown.seguridad_social == D("300")
    assert breakdown.cuota_autonomo == D("290")
    assert breakdown.cuota_agrupacion == D("45")
    assert breakdown.gestoria == D("60")
    assert breakdown.seguros == D("120")
    assert breakdown.suministros == D("30")
    assert breakdown.otros == D("200")
    assert summary.unified_expenses.variable_expenses == D("75")
    assert summary.unified_expenses.total_expenses == D("1120")


def test_commission_is_not_counted_as_an_expense():
    summary = aggregate_period([_settled_record()], [], [])
    assert summary.unified_expenses.total_expenses == D("25")
    assert summary.real_net_profit == D("200") - D("70") - D("25")


@pytest.mark.parametrize(
    "income,profit,pct,healthy",
    [("1000", "200", D("20"), True), ("1000", "100", D("10"), False), ("0", "0", D("0"), False),
     ("1000", "150", D("15"), False), ("500", "-50", D("-10"), False)],
)
def test_classify_margin(income, profit, pct, healthy):
    margin = classify_margin(income, profit)
    assert margin.profit_margin_pct == pct
    assert margin.is_healthy is healthy


def test_healthy_threshold_is_fifteen_percent():
    assert HEALTHY_MARGIN_PCT == D("15")


@pytest.mark.parametrize(
    "commission,nomina,extra,shortfall",
    [("1600", "1400", "200", "0"), ("1000", "1000", "0", "400"), ("1400", "1400", "0", "0")],
)
def test_reconcile_salary(commission, nomina, extra, shortfall):
    reconciliation = reconcile_salary(commission, "1400")
    assert reconciliation.nomina_real == D(nomina)
    assert reconciliation.efectivo_adicional == D(extra)
    assert reconciliation.shortfall == D(shortfall)


def test_reconciliation_does_not_change_commission_or_profit():
    records = [_settled_record("5000", "0", "0")]
    low = aggregate_period(records, [], [], base_salary="1400")
    high = aggregate_period(records, [], [], base_salary="3000")
    assert low.driver_commission == high.driver_commission
    assert low.real_net_profit == high.real_net_profit
    assert low.efectivo_adicional == D("350")
    assert high.efectivo_adicional == D("0")


def test_partition_expenses_excludes_fuel_from_variable():
    expenses = [
        {"category": "Combustible", "amount": "60"},
        {"category": "Mantenimiento", "amount": "40"},
        {"category": "Gestoría", "amount": "50"},
        {"category": "Licencia", "amount": "100", "is_recurring": True},
    ]
    fixed, variable = partition_expenses(expenses)
    assert [e["category"] for e in fixed] == ["Gestoría", "Licencia"]
    assert [e["category"] for e in variable] == ["Mantenimiento"]


def test_fixed_category_helpers():
    assert is_fixed_category("Gestoría")
    assert not is_fixed_category("Combustible")
    assert fixed_bucket_for("  Seguridad   social ") == "seguridad_social"
    assert fixed_bucket_for("anything else") == "otros"


def test_recurring_expense_needs_frequency_and_due_date():
    with pytest.raises(SettlementValidationError) as excinfo:
        validate_expense({"amount": "10", "is_recurring": True, "next_due_date": "2024-01-01"})
    assert excinfo.value.field == "frequency"
    with pytest.raises(SettlementValidationError) as excinfo:
        validate_expense({"amount": "10", "is_recurring": True, "frequency": "monthly"})
    assert excinfo.value.field == "next_due_date"
    validate_expense({"amount": "10", "is_recurring": False})


@pytest.mark.parametrize("total", ["121", "100", "33.33", "0.01"])
def test_split_vat_parts_add_up(total):
    amount, tax = split_vat(total)
    assert amount + tax == D(total)
    assert amount == round2(D(total) / D("1.21"))


def test_payroll_net_amount():
    assert payroll_net_amount("1400", "250", "50", "30", "120") == D("1550")
    with pytest.raises(SettlementValidationError):
        payroll_net_amount("-1")


def test_resolve_base_salary_prefers_payroll():
    assert resolve_base_salary(None, "1400") == D("1400")
    assert resolve_base_salary({"base_salary": "1250"}, "1400") == D("1250")


def test_summary_json_round_trip_keeps_cents():
    records = [_settled_record("123.45", "10.01", "0.99"), _settled_record("0.07", "0", "0")]
    summary = aggregate_period(
        records,
        [{"category": "Seguros", "amount": "45.67"}],
        [{"category": "Mantenimiento", "amount": "12.34"}],
        base_salary="1400",
    )
    schema = FinancialSummarySchema()
    payload = schema.dump(summary)

    assert payload["totalIncome"] == "123.52"
    assert payload["unifiedExpenses"]["monthlyFixedExpenses"]["seguros"] == "45.67"

    restored = schema.load(payload)
    assert restored == summary
    assert restored.real_net_profit == summary.real_net_profit


def test_summary_dump_includes_margin():
    summary = replace(aggregate_period([], [], []), total_income=D("1000"), real_net_profit=D("200"))
    payload = FinancialSummarySchema().dump(summary)
    assert payload["margin"] == {"profitMarginPct": "20.00", "isHealthy": True}
