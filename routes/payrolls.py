from __future__ import annotations

from datetime import date, datetime

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import jwt_required

from business_settings import resolve_base_salary
from extensions import db
from models import Payroll, PayrollStatus, User
from routes.common import (
    LedgerError,
    admin_only,
    current_user,
    get_or_error,
    parse_date_arg,
    parse_driver_arg,
)
from schemas import payroll_input_schema, payroll_schema, payrolls_schema
from settlement import round2

bp = Blueprint("payrolls", __name__, url_prefix="/api/payrolls")

AMOUNT_FIELDS = ("base_salary", "commissions", "bonuses", "deductions", "tax_withholding")
PLAIN_FIELDS = ("period_start", "period_end", "pdf_url", "notes")


def find_payroll(user_id: int, start: date, end: date) -> Payroll | None:
    """First payroll of ``user_id`` whose period overlaps ``start``..``end``."""

    return (
        Payroll.query.filter(
            Payroll.user_id == user_id,
            Payroll.period_start <= end,
            Payroll.period_end >= start,
        )
        .order_by(Payroll.period_end.desc(), Payroll.id.desc())
        .first()
    )


def _apply_status(payroll: Payroll, data: dict) -> None:
    if "status" in data:
        payroll.status = data["status"]
    if payroll.status == PayrollStatus.paid:
        payroll.payment_date = data.get("payment_date") or payroll.payment_date or datetime.utcnow()
    else:
        payroll.payment_date = None


def _apply_payroll(payroll: Payroll, data: dict) -> Payroll:
    if "user_id" in data:
        user = db.session.get(User, data["user_id"])
        if user is None:
            raise LedgerError("User not found", 404)
        payroll.user_id = user.id
    for field in PLAIN_FIELDS:
        if field in data:
            setattr(payroll, field, data[field])
    for field in AMOUNT_FIELDS:
        if field in data:
            setattr(payroll, field, round2(data[field] or 0))
        elif getattr(payroll, field) is None:
            setattr(payroll, field, round2(0))
    if payroll.period_end < payroll.period_start:
        raise LedgerError("periodEnd must be on or after periodStart.")
    _apply_status(payroll, data)
    payroll.recalculate_net()
    return payroll


@bp.get("")
@jwt_required()
def list_payrolls():
    user = current_user()
    query = Payroll.query
    if user.is_admin:
        user_id = parse_driver_arg(request.args.get("userId"))
        if user_id is not None:
            query = query.filter(Payroll.user_id == user_id)
    else:
        query = query.filter(Payroll.user_id == user.id)

    start = parse_date_arg(request.args.get("from"), "from")
    end = parse_date_arg(request.args.get("to"), "to")
    if start:
        query = query.filter(Payroll.period_end >= start)
    if end:
        query = query.filter(Payroll.period_end <= end)

    status = (request.args.get("status") or "").strip()
    if status:
        try:
            query = query.filter(Payroll.status == PayrollStatus(status))
        except ValueError:
            raise LedgerError("Invalid status")

    payrolls = query.order_by(Payroll.period_end.desc(), Payroll.id.desc()).all()
    return jsonify(payrolls_schema.dump(payrolls))


@bp.post("")
@jwt_required()
def create_payroll():
    error = admin_only()
    if error:
        return error

    data = payroll_input_schema.load(request.get_json(silent=True) or {})
    payroll = _apply_payroll(Payroll(status=PayrollStatus.pending), data)
    db.session.add(payroll)
    db.session.commit()
    current_app.logger.info(
        "Payroll %s created for user %s (%s..%s, net %s)",
        payroll.id,
        payroll.user_id,
        payroll.period_start,
        payroll.period_end,
        payroll.net_amount,
    )
    return jsonify(payroll_schema.dump(payroll)), 201


@bp.get("/conductor")
@jwt_required()
def conductor_payroll():
    """Payroll of the calling driver for a period, or the default base salary."""

    user = current_user()
    start = parse_date_arg(request.args.get("startDate") or request.args.get("from"), "startDate")
    end = parse_date_arg(request.args.get("endDate") or request.args.get("to"), "endDate")
    if not start or not end:
        raise LedgerError("startDate and endDate are required")

    payroll = find_payroll(user.id, start, end)
    if payroll is None:
        return jsonify(
            {
                "found": False,
                "defaultSalary": str(round2(resolve_base_salary(current_app.config))),
                "msg": "No payroll found for the selected period",
            }
        )
    return jsonify({"found": True, "payroll": payroll_schema.dump(payroll)})


@bp.get("/<int:payroll_id>")
@jwt_required()
def get_payroll(payroll_id: int):
    user = current_user()
    payroll = get_or_error(Payroll, payroll_id, "Payroll")
    if payroll.user_id != user.id and not user.is_admin:
        raise LedgerError("You are not allowed to access this payroll", 403)
    return jsonify(payroll_schema.dump(payroll))


@bp.put("/<int:payroll_id>")
@jwt_required()
def update_payroll(payroll_id: int):
    error = admin_only()
    if error:
        return error

    payroll = get_or_error(Payroll, payroll_id, "Payroll")
    data = payroll_input_schema.load(request.get_json(silent=True) or {}, partial=True)
    _apply_payroll(payroll, data)
    db.session.commit()
    return jsonify(payroll_schema.dump(payroll))


@bp.delete("/<int:payroll_id>")
@jwt_required()
def delete_payroll(payroll_id: int):
    error = admin_only()
    if error:
        return error

    payroll = get_or_error(Payroll, payroll_id, "Payroll")
    db.session.delete(payroll)
    db.session.commit()
    return jsonify({"msg": "Payroll deleted"})
