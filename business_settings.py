from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping

from flask import current_app

from extensions import db
from models import Configuration, RoleEnum
from settlement import (
    CommissionMode,
    DEFAULT_BASE_SALARY,
    DEFAULT_COMMISSION_RATE,
    SettlementValidationError,
    to_decimal,
)

BASE_SALARY_KEY = "driver_base_salary"
COMMISSION_RATE_KEY = "driver_commission_rate"

KNOWN_SETTINGS = {
    BASE_SALARY_KEY: "Salario base mensual del conductor (EUR)",
    COMMISSION_RATE_KEY: "Porcentaje de comisión del conductor",
}


def _config(app_config: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return app_config if app_config is not None else getattr(current_app, "config", {})


def stored_setting(key: str) -> str | None:
    row = db.session.query(Configuration).filter_by(key=key).first()
    if row is None:
        return None
    value = (row.value or "").strip()
    return value or None


def upsert_setting(key: str, value: Any, description: str | None = None) -> Configuration:
    row = db.session.query(Configuration).filter_by(key=key).first()
    if row is None:
        row = Configuration(key=key, value=str(value), description=description or KNOWN_SETTINGS.get(key))
        db.session.add(row)
    else:
        row.value = str(value)
        if description is not None:
            row.description = description
    return row


def resolve_base_salary(app_config: Mapping[str, Any] | None = None) -> Decimal:
    """Default monthly base salary, preferring the configuration table."""

    config = _config(app_config)
    for raw in (stored_setting(BASE_SALARY_KEY), config.get("DRIVER_BASE_SALARY")):
        if raw is None:
            continue
        try:
            value = to_decimal(raw, "base_salary")
        except SettlementValidationError:
            current_app.logger.warning("Ignoring invalid base salary setting: %r", raw)
            continue
        if value >= 0:
            return value
    return DEFAULT_BASE_SALARY


def _as_rate(raw: Any, percent: bool = False) -> Decimal:
    """Read a commission rate as a fraction.

    Configuration table values are always percentages (35 means 35%). Other
    sources may give either form, so values above 1 are read as percentages.
    """

    value = to_decimal(raw, "commission_rate")
    if percent or value > 1:
        value = value / 100
    if value < 0 or value > 1:
        raise SettlementValidationError("commission_rate", "must be between 0 and 1")
    return value


def resolve_commission_rate(
    app_config: Mapping[str, Any] | None = None,
    requested: Any = None,
) -> Decimal:
    if requested is not None and str(requested).strip():
        return _as_rate(requested)

    config = _config(app_config)
    sources = (
        (stored_setting(COMMISSION_RATE_KEY), True),
        (config.get("DRIVER_COMMISSION_RATE"), False),
    )
    for raw, percent in sources:
        if raw is None:
            continue
        try:
            return _as_rate(raw, percent=percent)
        except SettlementValidationError:
            current_app.logger.warning("Ignoring invalid commission rate setting: %r", raw)
    return DEFAULT_COMMISSION_RATE


def resolve_commission_mode(
    app_config: Mapping[str, Any] | None = None,
    role: RoleEnum | str | None = None,
    requested: Any = None,
) -> CommissionMode:
    """Pick the commission policy for a request.

    An explicit ``commissionMode`` wins; otherwise admins settle on gross
    income and drivers after expenses, unless the app config says otherwise.
    """

    if requested:
        try:
            return CommissionMode(str(requested).strip().lower().replace("-", "_"))
        except ValueError as exc:
            raise SettlementValidationError("commissionMode", f"unknown mode {requested!r}") from exc

    config = _config(app_config)
    try:
        is_admin = RoleEnum(role) == RoleEnum.admin
    except (TypeError, ValueError):
        is_admin = False
    key = "COMMISSION_MODE_ADMIN" if is_admin else "COMMISSION_MODE_DRIVER"
    fallback = CommissionMode.gross if is_admin else CommissionMode.post_expense
    try:
        return CommissionMode(config.get(key) or fallback.value)
    except ValueError:
        return fallback
