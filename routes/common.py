from __future__ import annotations

from datetime import date

from flask import jsonify
from flask_jwt_extended import get_jwt, get_jwt_identity

from extensions import db
from models import RoleEnum, User


class LedgerError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def require_role(*roles):
    claims = get_jwt()
    try:
        current_role = RoleEnum(claims.get("role"))
    except (ValueError, TypeError):
        return False
    return current_role in roles


def current_user() -> User:
    identity = get_jwt_identity()
    try:
        user_id = int(identity)
    except (TypeError, ValueError):
        raise LedgerError("Invalid token subject", 422)
    user = db.session.get(User, user_id)
    if user is None or not user.active:
        raise LedgerError("User not found", 401)
    return user


def admin_only():
    if not require_role(RoleEnum.admin):
        return jsonify({"msg": "Admins only"}), 403
    return None


def parse_date_arg(raw: str | None, name: str) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw.strip()[:10])
    except ValueError:
        raise LedgerError(f"Invalid {name}. Use YYYY-MM-DD.")


def parse_driver_arg(raw: str | None) -> int | None:
    if not raw or raw == "all":
        return None
    try:
        return int(raw)
    except ValueError:
        raise LedgerError("Invalid driverId.")


def get_or_error(model, object_id: int, label: str):
    instance = db.session.get(model, object_id)
    if instance is None:
        raise LedgerError(f"{label} not found", 404)
    return instance


def ensure_owner_or_admin(owner_id: int, user: User) -> None:
    if owner_id != user.id and not user.is_admin:
        raise LedgerError("You are not allowed to access this record", 403)
