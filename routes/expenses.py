from __future__ import annotations

from datetime import date
from decimal import Decimal

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import jwt_required
from sqlalchemy import func

from extensions import db
from models import Expense, ExpenseStatus
from recurrence import advance_due_date, due_window, generated_description, month_bounds
from routes.common import LedgerError, admin_only, current_user, get_or_error, parse_date_arg
from schemas import (
    FixedExpenseBreakdownSchema,
    expense_input_schema,
    expense_payment_schema,
    expense_schema,
    expenses_schema,
)
from settlement import (
    FIXED_BUCKETS,
    SettlementValidationError,
    fixed_bucket_for,
    partition_expenses,
    round2,
    split_vat,
    validate_expense,
)

bp = Blueprint("expenses", __name__, url_prefix="/api/expenses")

fixed_breakdown_schema = FixedExpenseBreakdownSchema()

EXPENSE_FIELDS = (
    "date",
    "category",
    "description",
    "is_recurring",
    "frequency",
    "next_due_date",
    "status",
    "payment_date",
    "receipt_url",
    "notes",
)


def _expenses_in_range(start: date | None, end: date | None):
    query = Expense.query
    if start:
        query = query.filter(Expense.date >= start)
    if end:
        query = query.filter(Expense.date <= end)
    return query


def _apply_amounts(expense: Expense, data: dict) -> None:
    if data.get("total_with_vat") is not None:
        expense.amount, expense.tax_amount = split_vat(data["total_with_vat"])
    else:
        if "amount" in data:
            expense.amount = data["amount"]
        if "tax_amount" in data:
            expense.tax_amount = data["tax_amount"] if data["tax_amount"] is not None else Decimal("0")
    if expense.tax_amount is None:
        expense.tax_amount = Decimal("0")
    if expense.tax_amount < 0:
        raise SettlementValidationError("tax_amount", "must not be negative")
    expense.recalculate_total()


def _apply_expense(expense: Expense, data: dict) -> Expense:
    for field in EXPENSE_FIELDS:
        if field in data:
            setattr(expense, field, data[field])
    _apply_amounts(expense, data)
    if not expense.is_recurring:
        expense.frequency = None
        expense.next_due_date = None
    validate_expense(expense)
    return expense


@bp.get("")
@jwt_required()
def list_expenses():
    error = admin_only()
    if error:
        return error

    start = parse_date_arg(request.args.get("from"), "from")
    end = parse_date_arg(request.args.get("to"), "to")
    query = _expenses_in_range(start, end)

    category = (request.args.get("category") or "").strip()
    if category and category != "all":
        query = query.filter(func.lower(Expense.category) == category.lower())
    status = (request.args.get("status") or "").strip()
    if status and status != "all":
        try:
            query = query.filter(Expense.status == ExpenseStatus(status))
        except ValueError:
            raise LedgerError("Invalid status")

    expenses = query.order_by(Expense.date.desc(), Expense.id.desc()).all()

    expense_type = (request.args.get("type") or "").strip().lower()
    if expense_type in {"fixed", "variable"}:
        fixed, variable = partition_expenses(expenses)
        expenses = fixed if expense_type == "fixed" else variable
    elif expense_type and expense_type != "all":
        raise LedgerError("type must be fixed or variable")

    return jsonify(expenses_schema.dump(expenses))


@bp.post("")
@jwt_required()
def create_expense():
    error = admin_only()
    if error:
        return error

    user = current_user()
    data = expense_input_schema.load(request.get_json(silent=True) or {})
    expense = _apply_expense(Expense(created_by_id=user.id, status=ExpenseStatus.pending), data)
    db.session.add(expense)
    db.session.commit()
    current_app.logger.info(
        "Expense %s created (%s, %s)", expense.id, expense.category, expense.total_amount
    )
    return jsonify(expense_schema.dump(expense)), 201


@bp.get("/unified")
@jwt_required()
def unified_expenses():
    """Fixed expenses by bucket plus variable expenses for a period."""

    error = admin_only()
    if error:
        return error

    start = parse_date_arg(request.args.get("from"), "from")
    end = parse_date_arg(request.args.get("to"), "to")
    fixed, variable = partition_expenses(_expenses_in_range(start, end).all())

    buckets = {key: Decimal("0") for key, _, _ in FIXED_BUCKETS}
    buckets["otros"] = Decimal("0")
    for expense in fixed:
        buckets[fixed_bucket_for(expense.category)] += expense.amount
    fixed_total = sum(buckets.values(), Decimal("0"))
    variable_total = sum((expense.amount for expense in variable), Decimal("0"))

    return jsonify(
        {
            "monthlyFixedExpenses": fixed_breakdown_schema.dump(buckets),
            "fixedTotal": str(round2(fixed_total)),
            "variableTotal": str(round2(variable_total)),
            "fixed": expenses_schema.dump(fixed),
            "variable": expenses_schema.dump(variable),
        }
    )


def due_recurring_templates(cutoff: date) -> list[Expense]:
    return (
        Expense.query.filter(
            Expense.is_recurring.is_(True),
            Expense.next_due_date.isnot(None),
            Expense.next_due_date <= cutoff,
        )
        .order_by(Expense.next_due_date.asc())
        .all()
    )


def generate_recurring_expenses(today: date | None = None) -> list[Expense]:
    """Create this cycle's copy of every recurring expense due within the look-ahead window.

    A copy is skipped when one with the same description already exists in the
    due month. The template's ``next_due_date`` moves forward either way.
    """

    cutoff = due_window(today or date.today())
    templates = due_recurring_templates(cutoff)

    created: list[Expense] = []
    for template in templates:
        while template.next_due_date <= cutoff:
            due = template.next_due_date
            description = generated_description(template.description, due)
            month_start, month_end = month_bounds(due)
            exists = Expense.query.filter(
                Expense.description == description,
                Expense.date >= month_start,
                Expense.date <= month_end,
            ).first()
            if exists is None:
                copy = Expense(
                    date=due,
                    category=template.category,
                    description=description,
                    amount=template.amount,
                    tax_amount=template.tax_amount,
                    is_recurring=False,
                    status=ExpenseStatus.approved,
                    notes=f"Generado automáticamente desde gasto recurrente ID: {template.id}",
                    source_expense_id=template.id,
                    created_by_id=template.created_by_id,
                )
                copy.recalculate_total()
                db.session.add(copy)
                created.append(copy)
            template.next_due_date = advance_due_date(due, template.frequency)

    db.session.commit()
    current_app.logger.info("Generated %s recurring expenses", len(created))
    return created


@bp.get("/generate-recurring")
@jwt_required()
def pending_recurring():
    """List recurring templates that the next generation run would copy."""

    error = admin_only()
    if error:
        return error

    today = parse_date_arg(request.args.get("today"), "today")
    templates = due_recurring_templates(due_window(today or date.today()))
    return jsonify({"pending": len(templates), "expenses": expenses_schema.dump(templates)})


@bp.post("/generate-recurring")
@jwt_required()
def generate_recurring():
    error = admin_only()
    if error:
        return error

    today = parse_date_arg(request.args.get("today"), "today")
    created = generate_recurring_expenses(today)
    return jsonify({"generated": len(created), "expenses": expenses_schema.dump(created)})


@bp.get("/<int:expense_id>")
@jwt_required()
def get_expense(expense_id: int):
    error = admin_only()
    if error:
        return error
    return jsonify(expense_schema.dump(get_or_error(Expense, expense_id, "Expense")))


@bp.put("/<int:expense_id>")
@jwt_required()
def update_expense(expense_id: int):
    error = admin_only()
    if error:
        return error

    expense = get_or_error(Expense, expense_id, "Expense")
    data = expense_input_schema.load(request.get_json(silent=True) or {}, partial=True)
    _apply_expense(expense, data)
    db.session.commit()
    return jsonify(expense_schema.dump(expense))


@bp.post("/<int:expense_id>/payment")
@bp.put("/<int:expense_id>/payment")
@jwt_required()
def set_payment(expense_id: int):
    error = admin_only()
    if error:
        return error

    expense = get_or_error(Expense, expense_id, "Expense")
    data = expense_payment_schema.load(request.get_json(silent=True) or {})
    if data["is_paid"]:
        expense.status = ExpenseStatus.completed
        expense.payment_date = data.get("payment_date") or date.today()
    else:
        expense.status = ExpenseStatus.pending
        expense.payment_date = None
    db.session.commit()
    current_app.logger.info("Expense %s payment state set to %s", expense.id, expense.status.value)
    return jsonify(expense_schema.dump(expense))


@bp.delete("/<int:expense_id>")
@jwt_required()
def delete_expense(expense_id: int):
    error = admin_only()
    if error:
        return error

    expense = get_or_error(Expense, expense_id, "Expense")
    Expense.query.filter(Expense.source_expense_id == expense.id).update(
        {Expense.source_expense_id: None}, synchronize_session=False
    )
    db.session.delete(expense)
    db.session.commit()
    return jsonify({"msg": "Expense deleted"})
