from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import jwt_required
from marshmallow import ValidationError

from business_settings import resolve_commission_mode, resolve_commission_rate
from extensions import db
from models import DailyRecord, DailyRecordRevision, User
from routes.common import (
    LedgerError,
    current_user,
    ensure_owner_or_admin,
    get_or_error,
    parse_date_arg,
    parse_driver_arg,
)
from schemas import (
    daily_record_input_schema,
    daily_record_schema,
    daily_records_schema,
    revisions_schema,
)
from settlement import SettlementValidationError, ShiftFigures

bp = Blueprint("daily_records", __name__, url_prefix="/api/daily-records")

FIGURE_FIELDS = (
    "cash_amount",
    "card_amount",
    "invoice_amount",
    "other_amount",
    "fuel_expense",
    "other_expenses",
    "start_km",
    "end_km",
)

PLAIN_FIELDS = (
    "date",
    "other_expense_notes",
    "notes",
    "shift_start",
    "shift_end",
    "break_start",
    "break_end",
    "image_url",
)

# Columns the revision log never reports.
UNTRACKED_COLUMNS = {"id", "created_at", "updated_at"}


def filtered_records_query(user: User, args) -> Any:
    """Records visible to ``user`` within the ``from``/``to``/``driverId`` filters."""

    query = DailyRecord.query
    if user.is_admin:
        driver_id = parse_driver_arg(args.get("driverId"))
        if driver_id is not None:
            query = query.filter(DailyRecord.driver_id == driver_id)
    else:
        query = query.filter(DailyRecord.driver_id == user.id)

    start = parse_date_arg(args.get("from"), "from")
    end = parse_date_arg(args.get("to"), "to")
    if start and end and end < start:
        raise LedgerError("'to' must be on or after 'from'.")
    if start:
        query = query.filter(DailyRecord.date >= start)
    if end:
        query = query.filter(DailyRecord.date <= end)
    return query


def _resolve_driver_id(data: dict, user: User, fallback: int | None = None) -> int:
    requested = data.get("driver_id")
    if not user.is_admin or not requested:
        return fallback if fallback is not None else user.id
    driver = db.session.get(User, requested)
    if driver is None:
        raise LedgerError("Driver not found", 404)
    return driver.id


def _apply_figures(record: DailyRecord, figures: ShiftFigures) -> None:
    record.cash_amount = figures.cash_amount
    record.card_amount = figures.card_amount
    record.invoice_amount = figures.invoice_amount
    record.other_amount = figures.other_amount
    record.fuel_expense = figures.fuel_expense
    record.other_expenses = figures.other_expenses
    record.start_km = figures.start_km if figures.start_km is not None else 0
    record.end_km = figures.end_km if figures.end_km is not None else record.start_km


def _diff(before: dict, after: dict) -> dict:
    changes = {}
    for key, value in after.items():
        if key in UNTRACKED_COLUMNS:
            continue
        previous = before.get(key)
        if previous != value:
            changes[key] = {"from": previous, "to": value}
    return changes


def _requested_rate(data: dict, user: User):
    rate = data.get("commission_rate")
    if rate is not None and not user.is_admin:
        raise LedgerError("Only admins can set commissionRate.", 403)
    return rate


def _build_record(data: dict, user: User) -> DailyRecord:
    figures = ShiftFigures.from_source(data)
    record = DailyRecord(driver_id=_resolve_driver_id(data, user))
    for field in PLAIN_FIELDS:
        if field in data:
            setattr(record, field, data[field])
    _apply_figures(record, figures)
    record.commission_mode = resolve_commission_mode(
        current_app.config, user.role, data.get("commission_mode")
    )
    record.commission_rate = resolve_commission_rate(current_app.config, _requested_rate(data, user))
    record.apply_settlement()
    record.revisions.append(
        DailyRecordRevision(
            changed_by_id=user.id,
            action="created",
            changes=_diff({}, record.snapshot()),
        )
    )
    return record


@bp.get("")
@jwt_required()
def list_records():
    user = current_user()
    records = (
        filtered_records_query(user, request.args)
        .order_by(DailyRecord.date.desc(), DailyRecord.id.desc())
        .all()
    )
    return jsonify(daily_records_schema.dump(records))


@bp.post("")
@jwt_required()
def create_record():
    user = current_user()
    data = daily_record_input_schema.load(request.get_json(silent=True) or {})
    record = _build_record(data, user)
    db.session.add(record)
    db.session.commit()
    current_app.logger.info(
        "Daily record %s created for driver %s (%s, commission %s)",
        record.id,
        record.driver_id,
        record.commission_mode.value,
        record.driver_commission,
    )
    return jsonify(daily_record_schema.dump(record)), 201


@bp.post("/batch")
@jwt_required()
def create_batch():
    """Create several records at once; nothing is saved if any entry fails."""

    user = current_user()
    payload = request.get_json(silent=True) or {}
    entries = payload.get("records") if isinstance(payload, dict) else payload
    if not isinstance(entries, list) or not entries:
        raise LedgerError("Provide a non-empty 'records' list.")

    records: list[DailyRecord] = []
    errors: list[dict] = []
    for index, entry in enumerate(entries):
        try:
            data = daily_record_input_schema.load(entry or {})
            records.append(_build_record(data, user))
        except ValidationError as exc:
            errors.append({"index": index, "errors": exc.messages})
        except SettlementValidationError as exc:
            errors.append({"index": index, "errors": {exc.field: [exc.message]}})
        except LedgerError as exc:
            errors.append({"index": index, "errors": {"_schema": [exc.message]}})

    if errors:
        current_app.logger.warning("Rejected daily record batch with %s invalid entries", len(errors))
        return jsonify({"msg": "Some records are invalid", "errors": errors}), 400

    db.session.add_all(records)
    db.session.commit()
    current_app.logger.info("Imported %s daily records", len(records))
    return jsonify({"created": len(records), "records": daily_records_schema.dump(records)}), 201


@bp.get("/<int:record_id>")
@jwt_required()
def get_record(record_id: int):
    user = current_user()
    record = get_or_error(DailyRecord, record_id, "Record")
    ensure_owner_or_admin(record.driver_id, user)
    return jsonify(daily_record_schema.dump(record))


@bp.put("/<int:record_id>")
@jwt_required()
def update_record(record_id: int):
    user = current_user()
    record = get_or_error(DailyRecord, record_id, "Record")
    ensure_owner_or_admin(record.driver_id, user)

    data = daily_record_input_schema.load(request.get_json(silent=True) or {}, partial=True)
    before = record.snapshot()

    source = {field: getattr(record, field) for field in FIGURE_FIELDS}
    source.update({field: data[field] for field in FIGURE_FIELDS if field in data})
    if "total_amount" in data and "cash_amount" not in data:
        source["cash_amount"] = None
        source["total_amount"] = data["total_amount"]
    _apply_figures(record, ShiftFigures.from_source(source))

    for field in PLAIN_FIELDS:
        if field in data:
            setattr(record, field, data[field])
    if "driver_id" in data:
        record.driver_id = _resolve_driver_id(data, user, fallback=record.driver_id)

    # The stored mode and rate stay unless the edit names new ones.
    if data.get("commission_mode"):
        record.commission_mode = resolve_commission_mode(
            current_app.config, user.role, data["commission_mode"]
        )
    if _requested_rate(data, user) is not None:
        record.commission_rate = resolve_commission_rate(current_app.config, data["commission_rate"])
    record.apply_settlement()

    changes = _diff(before, record.snapshot())
    if changes:
        record.revisions.append(
            DailyRecordRevision(changed_by_id=user.id, action="updated", changes=changes)
        )
    db.session.commit()
    return jsonify(daily_record_schema.dump(record))


@bp.delete("/<int:record_id>")
@jwt_required()
def delete_record(record_id: int):
    user = current_user()
    record = get_or_error(DailyRecord, record_id, "Record")
    ensure_owner_or_admin(record.driver_id, user)
    db.session.delete(record)
    db.session.commit()
    current_app.logger.info("Daily record %s deleted by user %s", record_id, user.id)
    return jsonify({"msg": "Record deleted"})


@bp.get("/<int:record_id>/revisions")
@jwt_required()
def list_revisions(record_id: int):
    user = current_user()
    record = get_or_error(DailyRecord, record_id, "Record")
    ensure_owner_or_admin(record.driver_id, user)
    return jsonify(revisions_schema.dump(record.revisions))
