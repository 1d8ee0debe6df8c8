from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import jwt_required

from business_settings import (
    BASE_SALARY_KEY,
    COMMISSION_RATE_KEY,
    upsert_setting,
)
from extensions import db
from models import Configuration
from routes.common import admin_only
from schemas import configuration_schema, configurations_schema
from settlement import SettlementValidationError, to_decimal

bp = Blueprint("configuration", __name__, url_prefix="/api/configuration")

NUMERIC_KEYS = {BASE_SALARY_KEY, COMMISSION_RATE_KEY}


@bp.get("")
@jwt_required()
def list_configuration():
    error = admin_only()
    if error:
        return error

    rows = Configuration.query.order_by(Configuration.key.asc()).all()
    key = request.args.get("key")
    if key:
        rows = [row for row in rows if row.key == key]
    return jsonify(configurations_schema.dump(rows))


@bp.post("")
@jwt_required()
def save_configuration():
    """Create or update a single key."""

    error = admin_only()
    if error:
        return error

    data = configuration_schema.load(request.get_json(silent=True) or {})
    key = data["key"].strip()
    value = str(data["value"]).strip()

    if key in NUMERIC_KEYS:
        number = to_decimal(value, key)
        if number < 0:
            raise SettlementValidationError(key, "must not be negative")
        if key == COMMISSION_RATE_KEY and number > 100:
            raise SettlementValidationError(key, "must be a percentage between 0 and 100")

    row = upsert_setting(key, value, data.get("description"))
    db.session.commit()
    current_app.logger.info("Configuration %s set to %s", key, value)
    return jsonify(configuration_schema.dump(row))
