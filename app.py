import json
import os
from datetime import date as dt_date
from typing import Optional, Tuple

import click
from alembic import command
from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from flask import Flask, current_app, jsonify
from marshmallow import ValidationError
from sqlalchemy import create_engine, func, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError, ProgrammingError, SQLAlchemyError

from config import Config, current_database_url
from extensions import db, migrate, jwt
from models import (
    Configuration,
    DailyRecord,
    DailyRecordRevision,
    Expense,
    Payroll,
    RoleEnum,
    TimeEntry,
    User,
)
from routes import (
    auth,
    configuration,
    daily_records,
    expenses,
    payrolls,
    reports,
    time_entries,
    users,
)
from routes.common import LedgerError
from settlement import SettlementValidationError


if os.name != "nt":  # pragma: no cover - platform dependent import
    import fcntl  # type: ignore[import-not-found]
else:  # pragma: no cover - Windows fallback
    fcntl = None  # type: ignore[assignment]


def _ensure_database_exists(database_url: str | None) -> None:
    if not database_url:
        return

    url = make_url(database_url)
    backend = (url.get_backend_name() or "").lower()

    if backend.startswith("sqlite"):
        database_path = url.database
        if database_path and database_path not in {":memory:", ""}:
            directory = os.path.dirname(os.path.abspath(database_path))
            if directory:
                os.makedirs(directory, exist_ok=True)
        return

    database_name = url.database
    if not database_name:
        return

    engine = create_engine(url)
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return
    except OperationalError:
        pass
    finally:
        engine.dispose()

    if not backend.startswith("postgresql"):
        return

    admin_url = url.set(database="postgres")
    admin_engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
    try:
        with admin_engine.connect() as connection:
            exists = connection.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": database_name},
            ).scalar()
            if not exists:
                connection.execute(text(f'CREATE DATABASE "{database_name}"'))
    finally:
        admin_engine.dispose()


def _run_database_migrations(app: Flask) -> None:
    """Apply Alembic migrations if the schema is not up-to-date."""

    database_uri = app.config.get("SQLALCHEMY_DATABASE_URI")
    if not database_uri:
        return

    if database_uri.startswith("sqlite") and ":memory:" in database_uri:
        return

    migrations_dir = os.path.join(app.root_path, "migrations")
    alembic_ini = os.path.join(migrations_dir, "alembic.ini")
    if not os.path.exists(alembic_ini):
        return

    config = AlembicConfig(alembic_ini)
    config.set_main_option("script_location", migrations_dir)
    config.set_main_option("sqlalchemy.url", database_uri)

    script = ScriptDirectory.from_config(config)
    head_revision = script.get_current_head()
    if not head_revision:
        return

    def _current_revision() -> str | None:
        try:
            with db.engine.connect() as connection:
                return connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
        except (OperationalError, ProgrammingError):
            return None

    with app.app_context():
        if _current_revision() == head_revision:
            return

        lock_path = os.path.join(app.instance_path, "alembic.lock")
        os.makedirs(app.instance_path, exist_ok=True)
        lock_file = open(lock_path, "w")
        try:
            if fcntl is not None:
                fcntl.flock(lock_file, fcntl.LOCK_EX)

            if _current_revision() == head_revision:
                return

            app.logger.info("Applying database migrations…")
            try:
                command.upgrade(config, "head")
            except Exception:
                if _current_revision() != head_revision:
                    raise
        finally:
            if fcntl is not None:
                fcntl.flock(lock_file, fcntl.LOCK_UN)
            lock_file.close()


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(LedgerError)
    def handle_ledger_error(exc: LedgerError):
        db.session.rollback()
        return jsonify({"msg": exc.message}), exc.status_code

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError):
        db.session.rollback()
        current_app.logger.warning("Rejected payload: %s", exc.messages)
        return jsonify({"msg": "Invalid data", "errors": exc.messages}), 400

    @app.errorhandler(SettlementValidationError)
    def handle_settlement_error(exc: SettlementValidationError):
        db.session.rollback()
        current_app.logger.warning("Rejected settlement input: %s", exc)
        return jsonify({"msg": exc.message, "errors": {exc.field: [exc.message]}}), 400

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(exc: SQLAlchemyError):
        db.session.rollback()
        current_app.logger.exception("Database error while handling request")
        return jsonify({"msg": "Unable to save changes right now."}), 500

    @app.errorhandler(404)
    def handle_not_found(exc):
        return jsonify({"msg": "Not found"}), 404


def create_app():
    app = Flask(__name__)
    app.config.from_object(Config)
    database_url = current_database_url()
    _ensure_database_exists(database_url)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    db.init_app(app)
    migrate.init_app(app, db)
    _run_database_migrations(app)
    jwt.init_app(app)

    @jwt.additional_claims_loader
    def add_claims(identity):
        try:
            u = db.session.get(User, int(identity))
        except (TypeError, ValueError):
            u = None
        return {"role": u.role.value if u else None}

    app.register_blueprint(auth.bp)
    app.register_blueprint(users.bp)
    app.register_blueprint(daily_records.bp)
    app.register_blueprint(expenses.bp)
    app.register_blueprint(payrolls.bp)
    app.register_blueprint(time_entries.bp)
    app.register_blueprint(configuration.bp)
    app.register_blueprint(reports.bp)
    _register_error_handlers(app)

    @app.get("/api/health")
    def health(): return jsonify({"ok": True})

    return app


app = create_app()


def _normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def _ensure_user(
    flask_app,
    *,
    role: RoleEnum,
    email: str,
    password: str,
    name: Optional[str],
    ensure_if_missing: bool = True,
    force_reset: bool = False,
    allow_multiple: bool = True,
) -> Tuple[str, str]:
    """Ensure a user with ``role`` exists and optionally reset its password.

    Returns a tuple of (status, normalized_email) where status is one of
    ``{"created", "reset", "updated", "skipped"}``.
    """

    normalized_email = _normalize_email(email)
    target_name = (name or "").strip() or None
    if flask_app is None:
        return "skipped", normalized_email

    with flask_app.app_context():
        try:
            user = User.query.filter(func.lower(User.email) == normalized_email).first()
        except (OperationalError, ProgrammingError):
            # Tables might not be ready yet (e.g. before migrations run)
            db.session.rollback()
            return "skipped", normalized_email

        if user:
            status = "skipped"
            if user.role != role:
                user.role = role
                status = "updated"
            if target_name and user.name != target_name:
                user.name = target_name
                status = "updated"
            if not user.active:
                user.active = True
                status = "updated"
            if force_reset:
                user.set_password(password)
                status = "reset"

            if status != "skipped":
                db.session.commit()
            return status, normalized_email

        if not ensure_if_missing:
            return "skipped", normalized_email

        if not force_reset and not allow_multiple:
            # Avoid creating duplicate admins when one already exists
            if User.query.filter_by(role=role).first():
                return "skipped", normalized_email

        user = User(
            name=target_name or role.value.title(),
            email=normalized_email,
            role=role,
            active=True,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return "created", normalized_email


def _ensure_admin_user(
    flask_app=None,
    *,
    email: Optional[str] = None,
    password: Optional[str] = None,
    name: Optional[str] = None,
    ensure_if_missing: bool = True,
    force_reset: bool = False,
    allow_multiple: bool = False,
) -> Tuple[str, str]:
    target_app = flask_app or globals().get("app")
    return _ensure_user(
        target_app,
        role=RoleEnum.admin,
        email=email or os.getenv("ADMIN_EMAIL", "admin@taxiledger.es"),
        password=password or os.getenv("ADMIN_PASSWORD", "Admin@123"),
        name=name if name is not None else os.getenv("ADMIN_NAME"),
        ensure_if_missing=ensure_if_missing,
        force_reset=force_reset,
        allow_multiple=allow_multiple,
    )


def _ensure_driver_user(
    flask_app=None,
    *,
    email: Optional[str] = None,
    password: Optional[str] = None,
    name: Optional[str] = None,
    force_reset: bool = False,
) -> Tuple[str, str]:
    target_app = flask_app or globals().get("app")
    return _ensure_user(
        target_app,
        role=RoleEnum.driver,
        email=email or os.getenv("DRIVER_EMAIL", "conductor@taxiledger.es"),
        password=password or os.getenv("DRIVER_PASSWORD", "Conductor@123"),
        name=name if name is not None else os.getenv("DRIVER_NAME", "Conductor"),
        force_reset=force_reset,
    )


def _echo_status(label: str, status: str, normalized_email: str) -> None:
    if status == "created":
        click.echo(f"✅ {label} created: {normalized_email}")
    elif status == "reset":
        click.echo(f"✅ {label} password reset: {normalized_email}")
    elif status == "updated":
        click.echo(f"✅ {label} updated: {normalized_email}")
    else:
        click.echo(f"ℹ️ {label} already up-to-date: {normalized_email}")


def _bootstrap_admin_user(flask_app=None):
    status, normalized_email = _ensure_admin_user(
        flask_app=flask_app,
        force_reset=os.getenv("RUN_SEED_ADMIN") == "1",
    )
    if status == "created":
        print(f"✅ Admin created: {normalized_email}")
    elif status == "reset":
        print(f"✅ Admin password reset: {normalized_email}")
    elif status == "updated":
        print(f"✅ Admin role updated: {normalized_email}")


# Call the hook at startup (idempotent)
_bootstrap_admin_user(flask_app=app)


# ---- CLI: seed or reset users ----
@app.cli.command("seed-admin")
@click.option("--email", default="admin@taxiledger.es", help="Admin email")
@click.option("--password", default="Admin@123", help="Admin password")
@click.option("--name", default="Admin", help="Admin display name")
def seed_admin(email, password, name):
    """Create or reset the admin user."""
    status, normalized_email = _ensure_admin_user(
        flask_app=app,
        email=email,
        password=password,
        name=name,
        ensure_if_missing=True,
        force_reset=True,
    )
    _echo_status("Admin", status, normalized_email)


@app.cli.command("seed-driver")
@click.option("--email", required=True, help="Driver email")
@click.option("--password", required=True, help="Driver password")
@click.option("--name", required=True, help="Driver display name")
def seed_driver(email, password, name):
    """Create a driver account, or reset its password if it exists."""
    status, normalized_email = _ensure_driver_user(
        flask_app=app,
        email=email,
        password=password,
        name=name,
        force_reset=True,
    )
    _echo_status("Driver", status, normalized_email)


# ---- CLI: ledger jobs ----
@app.cli.command("generate-recurring-expenses")
@click.option("--today", help="Reference date in YYYY-MM-DD format (defaults to today)")
def generate_recurring_expenses_command(today):
    """Create the upcoming copies of recurring fixed expenses."""

    try:
        reference = dt_date.fromisoformat(today) if today else None
    except ValueError as exc:  # pragma: no cover - CLI validation
        raise click.BadParameter("Date must use YYYY-MM-DD format.") from exc

    with app.app_context():
        created = expenses.generate_recurring_expenses(reference)
        for expense in created:
            click.echo(f"  {expense.date.isoformat()}  {expense.description}  {expense.total_amount}")
        click.echo(f"✅ Generated {len(created)} recurring expenses.")


@app.cli.command("settlement-summary")
@click.option("--from", "start", required=True, help="Period start (YYYY-MM-DD)")
@click.option("--to", "end", required=True, help="Period end (YYYY-MM-DD)")
@click.option("--driver-id", type=int, default=None, help="Restrict to one driver")
def settlement_summary(start, end, driver_id):
    """Print the financial summary of a period as JSON."""

    from schemas import financial_summary_schema

    try:
        start_date = dt_date.fromisoformat(start)
        end_date = dt_date.fromisoformat(end)
    except ValueError as exc:  # pragma: no cover - CLI validation
        raise click.BadParameter("Dates must use YYYY-MM-DD format.") from exc

    with app.app_context():
        summary, record_count = reports.build_financial_summary(start_date, end_date, driver_id)
        body = financial_summary_schema.dump(summary)
        body["recordCount"] = record_count
        click.echo(json.dumps(body, indent=2, ensure_ascii=False))


__all__ = [
    "Configuration",
    "DailyRecord",
    "DailyRecordRevision",
    "Expense",
    "Payroll",
    "RoleEnum",
    "TimeEntry",
    "User",
    "app",
    "create_app",
    "db",
]


if __name__ == "__main__":
    app.run(debug=True, port=int(os.getenv("PORT", 5000)))
