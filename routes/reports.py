from __future__ import annotations

import csv
import io
from datetime import date, datetime
from decimal import Decimal

from flask import Blueprint, Response, current_app, jsonify, request, send_file
from flask_jwt_extended import jwt_required
from openpyxl import Workbook
from openpyxl.styles import Font

from business_settings import resolve_base_salary as default_base_salary
from models import DailyRecord, Expense, ExpenseStatus, Payroll, PayrollStatus
from recurrence import month_bounds, spanish_month_label
from routes.common import LedgerError, admin_only, current_user, parse_date_arg, parse_driver_arg
from routes.daily_records import filtered_records_query
from routes.payrolls import find_payroll
from schemas import daily_records_schema, financial_summary_schema
from settlement import (
    FUEL_CATEGORY,
    aggregate_period,
    partition_expenses,
    resolve_base_salary,
    round2,
)

bp = Blueprint("reports", __name__, url_prefix="/api/reports")

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

DAILY_RECORD_HEADERS = [
    "ID",
    "Fecha",
    "Conductor",
    "Hora Inicio",
    "Hora Fin",
    "Km Inicio",
    "Km Fin",
    "Total Km",
    "Efectivo",
    "Tarjeta",
    "Facturación",
    "Otros Ingresos",
    "Total Ingresos",
    "Gastos Combustible",
    "Otros Gastos",
    "Total Gastos",
    "Modo Comisión",
    "Comisión Conductor",
    "Neto Empresa",
    "Notas",
]

EXPENSE_HEADERS = [
    "ID",
    "Fecha",
    "Categoría",
    "Descripción",
    "Base Imponible",
    "IVA (21%)",
    "Total",
    "Estado",
    "Usuario",
]


def _money_text(value) -> str:
    return f"{round2(value or 0):.2f}"


def _period_from_args() -> tuple[date, date]:
    start = parse_date_arg(request.args.get("from"), "from")
    end = parse_date_arg(request.args.get("to"), "to")
    if start is None or end is None:
        month_start, month_end = month_bounds(date.today())
        start = start or month_start
        end = end or month_end
    if end < start:
        raise LedgerError("'to' must be on or after 'from'.")
    return start, end


def _daily_record_row(record: DailyRecord) -> list:
    return [
        record.id,
        record.date.strftime("%d/%m/%Y"),
        record.driver.name if record.driver else "N/A",
        record.shift_start or "",
        record.shift_end or "",
        record.start_km,
        record.end_km,
        record.total_km,
        _money_text(record.cash_amount),
        _money_text(record.card_amount),
        _money_text(record.invoice_amount),
        _money_text(record.other_amount),
        _money_text(record.total_amount),
        _money_text(record.fuel_expense),
        _money_text(record.other_expenses),
        _money_text((record.fuel_expense or 0) + (record.other_expenses or 0)),
        record.commission_mode.value,
        _money_text(record.driver_commission),
        _money_text(record.net_amount),
        record.notes or "",
    ]


def _expense_row(expense: Expense) -> list:
    return [
        expense.id,
        expense.date.strftime("%d/%m/%Y"),
        expense.category,
        expense.description,
        _money_text(expense.amount),
        _money_text(expense.tax_amount),
        _money_text(expense.total_amount),
        "Pagado" if expense.status == ExpenseStatus.completed else "Pendiente",
        expense.created_by.name if expense.created_by else "N/A",
    ]


def _csv_response(headers: list, rows: list[list], filename: str) -> Response:
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL)
    writer.writerow(headers)
    writer.writerows(rows)
    output.seek(0)
    return Response(
        output.read(),
        mimetype="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename={filename}",
            "Cache-Control": "no-store",
        },
    )


def _xlsx_response(title: str, headers: list, rows: list[list], filename: str):
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = title
    sheet.append(headers)
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for row in rows:
        sheet.append(row)
    output = io.BytesIO()
    workbook.save(output)
    output.seek(0)
    return send_file(output, as_attachment=True, download_name=filename, mimetype=XLSX_MIMETYPE)


def build_financial_summary(start: date, end: date, driver_id: int | None = None):
    """Fetch a period's rows and fold them through the settlement core."""

    query = DailyRecord.query.filter(DailyRecord.date >= start, DailyRecord.date <= end)
    if driver_id is not None:
        query = query.filter(DailyRecord.driver_id == driver_id)
    records = query.all()

    expenses = Expense.query.filter(Expense.date >= start, Expense.date <= end).all()
    fixed, variable = partition_expenses(expenses)

    default_salary = default_base_salary(current_app.config)
    payroll = find_payroll(driver_id, start, end) if driver_id is not None else None
    base_salary = resolve_base_salary(payroll, default_salary)

    summary = aggregate_period(records, fixed, variable, base_salary)
    current_app.logger.info(
        "Financial summary %s..%s driver=%s: %s records, income %s, commission %s",
        start,
        end,
        driver_id,
        len(records),
        summary.total_income,
        summary.driver_commission,
    )
    return summary, len(records)


@bp.get("/financial-summary")
@jwt_required()
def financial_summary():
    error = admin_only()
    if error:
        return error

    start, end = _period_from_args()
    driver_id = parse_driver_arg(request.args.get("driverId"))
    summary, record_count = build_financial_summary(start, end, driver_id)

    body = financial_summary_schema.dump(summary)
    body["period"] = {"from": start.isoformat(), "to": end.isoformat()}
    body["driverId"] = driver_id
    body["recordCount"] = record_count
    return jsonify(body)


def _balance_alerts(income: Decimal, final_balance: Decimal, fixed: Decimal) -> list[dict]:
    alerts = []
    if final_balance < 0:
        alerts.append({"type": "danger", "message": f"Balance negativo: {_money_text(final_balance)}€"})
    elif final_balance < income * Decimal("0.1"):
        margin = final_balance / income * 100
        alerts.append({"type": "warning", "message": f"Balance bajo: solo {margin:.1f}% de margen"})
    if income and fixed > income * Decimal("0.6"):
        share = fixed / income * 100
        alerts.append(
            {"type": "warning", "message": f"Gastos fijos muy altos: {share:.1f}% de los ingresos"}
        )
    return alerts


@bp.get("/balance")
@jwt_required()
def monthly_balance():
    """Monthly income against operational costs and booked expenses."""

    error = admin_only()
    if error:
        return error

    raw_month = (request.args.get("month") or "").strip()
    if raw_month:
        try:
            anchor = datetime.strptime(raw_month[:7], "%Y-%m").date()
        except ValueError:
            raise LedgerError("Invalid month. Use YYYY-MM.")
    else:
        anchor = date.today()
    start, end = month_bounds(anchor)

    records = DailyRecord.query.filter(DailyRecord.date >= start, DailyRecord.date <= end).all()
    expenses = Expense.query.filter(Expense.date >= start, Expense.date <= end).all()

    zero = Decimal("0")
    income = sum((r.total_amount for r in records), zero)
    net_income = sum((r.net_amount for r in records), zero)
    fuel = sum((r.fuel_expense for r in records), zero)
    other = sum((r.other_expenses for r in records), zero)
    commissions = sum((r.driver_commission for r in records), zero)
    booked = sum((e.amount for e in expenses), zero)

    by_category: dict[str, Decimal] = {}
    for expense in expenses:
        by_category[expense.category] = by_category.get(expense.category, zero) + expense.amount
    by_category[FUEL_CATEGORY] = by_category.get(FUEL_CATEGORY, zero) + fuel
    by_category["Otros Gastos Operativos"] = by_category.get("Otros Gastos Operativos", zero) + other
    by_category["Comisiones Conductores"] = by_category.get("Comisiones Conductores", zero) + commissions

    operational = fuel + other + commissions
    final_balance = net_income - booked
    percentage = final_balance / income * 100 if income else zero
    alerts = _balance_alerts(income, final_balance, booked)

    return jsonify(
        {
            "month": spanish_month_label(anchor),
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "income": {
                "total": _money_text(income),
                "net": _money_text(net_income),
                "records": len(records),
            },
            "expenses": {
                "operational": {
                    "fuel": _money_text(fuel),
                    "other": _money_text(other),
                    "commissions": _money_text(commissions),
                    "total": _money_text(operational),
                },
                "fixed": {
                    "total": _money_text(booked),
                    "byCategory": {key: _money_text(value) for key, value in sorted(by_category.items())},
                    "count": len(expenses),
                },
                "total": _money_text(operational + booked),
            },
            "balance": {
                "gross": _money_text(income - operational),
                "net": _money_text(final_balance),
                "percentage": _money_text(percentage),
            },
            "alerts": alerts,
        }
    )


@bp.get("/export/daily-records")
@jwt_required()
def export_daily_records():
    user = current_user()
    export_format = (request.args.get("format") or "csv").lower()
    records = (
        filtered_records_query(user, request.args)
        .order_by(DailyRecord.date.desc(), DailyRecord.id.desc())
        .all()
    )

    if export_format == "json":
        return jsonify(daily_records_schema.dump(records))

    rows = [_daily_record_row(record) for record in records]
    suffix = f"{request.args.get('from') or 'inicio'}_{request.args.get('to') or 'hoy'}"
    if export_format == "csv":
        return _csv_response(DAILY_RECORD_HEADERS, rows, f"registros_diarios_{suffix}.csv")
    if export_format == "xlsx":
        return _xlsx_response("Registros", DAILY_RECORD_HEADERS, rows, f"registros_diarios_{suffix}.xlsx")
    raise LedgerError("format must be csv, xlsx or json")


@bp.get("/export/expenses")
@jwt_required()
def export_expenses():
    error = admin_only()
    if error:
        return error

    export_format = (request.args.get("format") or "xlsx").lower()
    start = parse_date_arg(request.args.get("from"), "from")
    end = parse_date_arg(request.args.get("to"), "to")
    query = Expense.query
    if start:
        query = query.filter(Expense.date >= start)
    if end:
        query = query.filter(Expense.date <= end)
    category = request.args.get("category")
    if category and category != "all":
        query = query.filter(Expense.category == category)
    status = request.args.get("status")
    if status and status != "all":
        try:
            query = query.filter(Expense.status == ExpenseStatus(status))
        except ValueError:
            raise LedgerError("Invalid status")

    rows = [_expense_row(expense) for expense in query.order_by(Expense.date.desc()).all()]
    if export_format == "csv":
        return _csv_response(EXPENSE_HEADERS, rows, "gastos.csv")
    if export_format == "xlsx":
        return _xlsx_response("Gastos", EXPENSE_HEADERS, rows, "gastos.xlsx")
    raise LedgerError("format must be csv or xlsx")


def _accounting_sections(start: date, end: date) -> list[tuple[str, list, list[list]]]:
    """Summary block and detail tables for the accounting export.

    Only approved expenses and paid payrolls closing inside the period count.
    """

    records = (
        DailyRecord.query.filter(DailyRecord.date >= start, DailyRecord.date <= end)
        .order_by(DailyRecord.date.desc(), DailyRecord.id.desc())
        .all()
    )
    expenses = (
        Expense.query.filter(
            Expense.date >= start,
            Expense.date <= end,
            Expense.status == ExpenseStatus.approved,
        )
        .order_by(Expense.date.desc())
        .all()
    )
    payrolls = (
        Payroll.query.filter(
            Payroll.period_end >= start,
            Payroll.period_end <= end,
            Payroll.status == PayrollStatus.paid,
        )
        .order_by(Payroll.period_end.desc())
        .all()
    )

    zero = Decimal("0")
    income = sum((r.total_amount for r in records), zero)
    operational = sum((r.fuel_expense + r.other_expenses for r in records), zero)
    commissions = sum((r.driver_commission for r in records), zero)
    fixed = sum((e.amount for e in expenses), zero)
    payroll_total = sum((p.net_amount for p in payrolls), zero)
    # Commissions reach drivers through payroll, so they are listed but not added again.
    total = operational + fixed + payroll_total

    def driver_name(record: DailyRecord) -> str:
        return record.driver.name if record.driver else f"Conductor {record.driver_id}"

    summary = [
        ["Ingresos Totales", _money_text(income)],
        ["Gastos Operativos", _money_text(operational)],
        ["Gastos Fijos", _money_text(fixed)],
        ["Nóminas", _money_text(payroll_total)],
        ["Comisiones", _money_text(commissions)],
        ["Gastos Totales", _money_text(total)],
        ["Beneficio Neto", _money_text(income - total)],
    ]
    income_rows = [
        [
            r.date.strftime("%d/%m/%Y"),
            driver_name(r),
            _money_text(r.cash_amount),
            _money_text(r.card_amount),
            _money_text(r.invoice_amount),
            _money_text(r.other_amount),
            _money_text(r.total_amount),
        ]
        for r in records
    ]
    operational_rows = [
        [
            r.date.strftime("%d/%m/%Y"),
            driver_name(r),
            _money_text(r.fuel_expense),
            _money_text(r.other_expenses),
            _money_text(r.driver_commission),
            _money_text(r.fuel_expense + r.other_expenses + r.driver_commission),
        ]
        for r in records
    ]
    fixed_rows = [
        [e.date.strftime("%d/%m/%Y"), e.category, e.description, _money_text(e.amount)]
        for e in expenses
    ]
    payroll_rows = [
        [
            f"{p.period_start.strftime('%d/%m/%Y')} - {p.period_end.strftime('%d/%m/%Y')}",
            p.user.name if p.user else f"Empleado {p.user_id}",
            _money_text(p.base_salary),
            _money_text(p.commissions),
            _money_text(p.bonuses),
            _money_text(p.deductions),
            _money_text(p.tax_withholding),
            _money_text(p.net_amount),
        ]
        for p in payrolls
    ]

    return [
        ("RESUMEN", ["Concepto", "Importe"], summary),
        (
            "DETALLE DE INGRESOS",
            ["Fecha", "Conductor", "Efectivo", "Tarjeta", "Factura", "Otros", "Total"],
            income_rows,
        ),
        (
            "DETALLE DE GASTOS OPERATIVOS",
            ["Fecha", "Conductor", "Combustible", "Otros Gastos", "Comisión", "Total"],
            operational_rows,
        ),
        ("DETALLE DE GASTOS FIJOS", ["Fecha", "Categoría", "Descripción", "Importe"], fixed_rows),
        (
            "DETALLE DE NÓMINAS",
            ["Período", "Empleado", "Salario Base", "Comisiones", "Bonos", "Deducciones", "Retención", "Neto"],
            payroll_rows,
        ),
    ]


@bp.get("/export/contabilidad")
@jwt_required()
def export_accounting():
    """Period accounting report: a summary block followed by detail sections."""

    error = admin_only()
    if error:
        return error

    export_format = (request.args.get("format") or "csv").lower()
    if export_format not in ("csv", "xlsx"):
        raise LedgerError("format must be csv or xlsx")

    start, end = _period_from_args()
    sections = _accounting_sections(start, end)
    period = f"Período: {start.strftime('%d/%m/%Y')} - {end.strftime('%d/%m/%Y')}"
    filename = f"contabilidad_{start.isoformat()}_{end.isoformat()}.{export_format}"
    current_app.logger.info("Accounting export %s..%s as %s", start, end, export_format)

    if export_format == "csv":
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(["INFORME DE CONTABILIDAD"])
        writer.writerow([period])
        for title, headers, rows in sections:
            writer.writerow([])
            writer.writerow([title])
            writer.writerow(headers)
            writer.writerows(rows)
        return Response(
            output.getvalue(),
            mimetype="text/csv",
            headers={
                "Content-Disposition": f"attachment; filename={filename}",
                "Cache-Control": "no-store",
            },
        )

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Contabilidad"
    sheet.append(["INFORME DE CONTABILIDAD"])
    sheet.append([period])
    sheet["A1"].font = Font(bold=True)
    for title, headers, rows in sections:
        sheet.append([])
        sheet.append([title])
        sheet.cell(row=sheet.max_row, column=1).font = Font(bold=True)
        sheet.append(headers)
        for cell in sheet[sheet.max_row]:
            cell.font = Font(bold=True)
        for row in rows:
            sheet.append(row)
    output = io.BytesIO()
    workbook.save(output)
    output.seek(0)
    return send_file(output, as_attachment=True, download_name=filename, mimetype=XLSX_MIMETYPE)
