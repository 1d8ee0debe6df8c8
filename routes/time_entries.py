from __future__ import annotations

from datetime import datetime, time, timezone

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from extensions import db
from models import TimeEntry, User
from routes.common import (
    LedgerError,
    current_user,
    ensure_owner_or_admin,
    get_or_error,
    parse_date_arg,
    parse_driver_arg,
)
from schemas import time_entries_schema, time_entry_input_schema, time_entry_schema

bp = Blueprint("time_entries", __name__, url_prefix="/api/time-entries")


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _active_entry(user_id: int, exclude_id: int | None = None) -> TimeEntry | None:
    query = TimeEntry.query.filter(TimeEntry.user_id == user_id, TimeEntry.end_time.is_(None))
    if exclude_id is not None:
        query = query.filter(TimeEntry.id != exclude_id)
    return query.first()


def _check_span(entry: TimeEntry) -> None:
    if entry.end_time is not None and entry.end_time < entry.start_time:
        raise LedgerError("endTime must be after startTime.")


@bp.get("")
@jwt_required()
def list_entries():
    user = current_user()
    query = TimeEntry.query
    if user.is_admin:
        user_id = parse_driver_arg(request.args.get("userId"))
        if user_id is not None:
            query = query.filter(TimeEntry.user_id == user_id)
    else:
        query = query.filter(TimeEntry.user_id == user.id)

    start = parse_date_arg(request.args.get("from"), "from")
    end = parse_date_arg(request.args.get("to"), "to")
    if start:
        query = query.filter(TimeEntry.start_time >= datetime.combine(start, time.min))
    if end:
        query = query.filter(TimeEntry.start_time <= datetime.combine(end, time.max))

    entries = query.order_by(TimeEntry.start_time.desc()).all()
    return jsonify(time_entries_schema.dump(entries))


@bp.get("/active")
@jwt_required()
def active_entry():
    user = current_user()
    entry = _active_entry(user.id)
    return jsonify(time_entry_schema.dump(entry) if entry else None)


@bp.post("")
@jwt_required()
def start_entry():
    user = current_user()
    data = time_entry_input_schema.load(request.get_json(silent=True) or {})

    user_id = user.id
    if user.is_admin and data.get("user_id"):
        user_id = get_or_error(User, data["user_id"], "User").id

    if _active_entry(user_id) is not None:
        raise LedgerError("There is already an active time entry for this user.")

    entry = TimeEntry(
        user_id=user_id,
        start_time=_naive_utc(data.get("start_time")) or datetime.utcnow(),
        end_time=_naive_utc(data.get("end_time")),
        break_time=data.get("break_time") or 0,
        notes=data.get("notes"),
    )
    _check_span(entry)
    entry.recalculate_minutes()
    db.session.add(entry)
    db.session.commit()
    return jsonify(time_entry_schema.dump(entry)), 201


@bp.get("/<int:entry_id>")
@jwt_required()
def get_entry(entry_id: int):
    user = current_user()
    entry = get_or_error(TimeEntry, entry_id, "Time entry")
    ensure_owner_or_admin(entry.user_id, user)
    return jsonify(time_entry_schema.dump(entry))


@bp.put("/<int:entry_id>")
@jwt_required()
def update_entry(entry_id: int):
    """Edit an entry; sending ``endTime`` closes an active one."""

    user = current_user()
    entry = get_or_error(TimeEntry, entry_id, "Time entry")
    ensure_owner_or_admin(entry.user_id, user)

    data = time_entry_input_schema.load(request.get_json(silent=True) or {}, partial=True)
    if data.get("start_time"):
        entry.start_time = _naive_utc(data["start_time"])
    if "end_time" in data:
        entry.end_time = _naive_utc(data["end_time"])
    if "break_time" in data:
        entry.break_time = data["break_time"] or 0
    if "notes" in data:
        entry.notes = data["notes"]

    if entry.end_time is None and _active_entry(entry.user_id, exclude_id=entry.id) is not None:
        raise LedgerError("There is already an active time entry for this user.")
    _check_span(entry)
    entry.recalculate_minutes()
    db.session.commit()
    return jsonify(time_entry_schema.dump(entry))


@bp.delete("/<int:entry_id>")
@jwt_required()
def delete_entry(entry_id: int):
    user = current_user()
    entry = get_or_error(TimeEntry, entry_id, "Time entry")
    ensure_owner_or_admin(entry.user_id, user)
    db.session.delete(entry)
    db.session.commit()
    return jsonify({"msg": "Time entry deleted"})
