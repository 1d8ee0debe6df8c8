"""Administrative endpoints for managing drivers and admins."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required
from sqlalchemy import asc, func

from extensions import db
from models import DailyRecord, DailyRecordRevision, Expense, Payroll, RoleEnum, TimeEntry, User
from routes.common import admin_only, current_user, get_or_error
from schemas import DriverSchema, user_schema, users_schema


bp = Blueprint("users", __name__, url_prefix="/api/users")

drivers_schema = DriverSchema(many=True)


def _normalise_email(value: str | None) -> str:
    return (value or "").strip().lower()


def _email_taken(email: str, exclude_id: int | None = None) -> bool:
    query = User.query.filter(func.lower(User.email) == email.lower())
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    return query.first() is not None


def _has_history(user_id: int) -> bool:
    return any(
        model.query.filter_by(**{column: user_id}).first() is not None
        for model, column in (
            (DailyRecord, "driver_id"),
            (Payroll, "user_id"),
            (TimeEntry, "user_id"),
            (Expense, "created_by_id"),
            (DailyRecordRevision, "changed_by_id"),
        )
    )


@bp.get("/me")
@jwt_required()
def me():
    return jsonify(user_schema.dump(current_user()))


@bp.get("/drivers")
@jwt_required()
def list_drivers():
    """Active drivers, for the admin's driver filter."""

    error = admin_only()
    if error:
        return error

    drivers = (
        User.query.filter(User.role == RoleEnum.driver, User.active.is_(True))
        .order_by(asc(User.name))
        .all()
    )
    return jsonify(drivers_schema.dump(drivers))


@bp.get("")
@jwt_required()
def list_users():
    error = admin_only()
    if error:
        return error

    users = User.query.order_by(asc(User.name)).all()
    return jsonify(users_schema.dump(users))


@bp.post("")
@jwt_required()
def create_user():
    error = admin_only()
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    name = (payload.get("name") or "").strip()
    email = _normalise_email(payload.get("email"))
    password = payload.get("password") or ""
    role_value = payload.get("role") or RoleEnum.driver.value
    active = bool(payload.get("active", True))

    if not name or not email or not password:
        return jsonify({"msg": "Name, email and password are required"}), 400

    try:
        role = RoleEnum(role_value)
    except ValueError:
        return jsonify({"msg": "Invalid role"}), 400

    if _email_taken(email):
        return jsonify({"msg": "Email already registered"}), 400

    user = User(name=name, email=email, role=role, active=active)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()

    return jsonify(user_schema.dump(user)), 201


@bp.put("/<int:user_id>")
@jwt_required()
def update_user(user_id: int):
    error = admin_only()
    if error:
        return error

    user = get_or_error(User, user_id, "User")
    payload = request.get_json(silent=True) or {}

    name = (payload.get("name") or user.name or "").strip()
    email = _normalise_email(payload.get("email")) or user.email
    role_value = payload.get("role") or user.role.value
    password = (payload.get("password") or "").strip()

    try:
        role = RoleEnum(role_value)
    except ValueError:
        return jsonify({"msg": "Invalid role"}), 400

    if _email_taken(email, exclude_id=user.id):
        return jsonify({"msg": "Email already registered"}), 400

    user.name = name
    user.email = email
    user.role = role
    user.active = bool(payload.get("active", user.active))
    if password:
        user.set_password(password)

    db.session.commit()
    return jsonify(user_schema.dump(user))


@bp.delete("/<int:user_id>")
@jwt_required()
def delete_user(user_id: int):
    error = admin_only()
    if error:
        return error

    requester = current_user()
    user = get_or_error(User, user_id, "User")

    if user.id == requester.id:
        return jsonify({"msg": "You cannot delete your own account."}), 400

    if _has_history(user.id):
        # Users referenced by the ledger are deactivated instead.
        user.active = False
        db.session.commit()
        return jsonify({"msg": "User has records and was deactivated"})

    db.session.delete(user)
    db.session.commit()
    return jsonify({"msg": "User deleted"})
