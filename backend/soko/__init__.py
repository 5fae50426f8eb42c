import os
import subprocess
from pathlib import Path

import click
from flask import Flask, jsonify, request, g
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from soko.errors import EscrowCoreError, EscrowIntegrityError
from soko.extensions import db, migrate, cors
from soko.models import User
from soko.segments.segment_orders_api import orders_bp
from soko.segments.segment_disputes import disputes_bp
from soko.segments.segment_admin_ops import admin_ops_bp
from soko.segments.segment_notifications import notifications_bp
from soko.integrations.payments.factory import payment_health
from soko.integrations.messaging.factory import messaging_health
from soko.utils.observability import init_sentry, install_request_observers


MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        cfg = Config(str(MIGRATIONS_DIR / "alembic.ini"))
        cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    val = (os.getenv("GIT_SHA") or os.getenv("SOURCE_VERSION") or "").strip()
    if val:
        return val
    try:
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(Path(__file__).resolve().parents[1]),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except Exception:
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _load_escrow_config(app: Flask) -> None:
    app.config.update(
        ORDER_RESPONSE_DEADLINE_HOURS=_env_int("ORDER_RESPONSE_DEADLINE_HOURS", 48, maximum=24 * 30),
        ORDER_SHIP_DEADLINE_HOURS=_env_int("ORDER_SHIP_DEADLINE_HOURS", 72, maximum=24 * 30),
        AUTO_RELEASE_GRACE_HOURS=_env_int("AUTO_RELEASE_GRACE_HOURS", 24, maximum=24 * 30),
        AUTO_RELEASE_ENABLED=_env_bool("AUTO_RELEASE_ENABLED", True),
        DELIVERY_CODE_MAX_ATTEMPTS=_env_int("DELIVERY_CODE_MAX_ATTEMPTS", 5, maximum=50),
        DEFAULT_COMMISSION_RATE=(os.getenv("DEFAULT_COMMISSION_RATE") or "10.00").strip(),
        PAYOUT_TRANSFER_FEE=(os.getenv("PAYOUT_TRANSFER_FEE") or "0.00").strip(),
        ORDER_TIMEOUTS_ENABLED=_env_bool("ORDER_TIMEOUTS_ENABLED", True),
        PAYOUTS_ENABLED=_env_bool("PAYOUTS_ENABLED", True),
        ORDER_TIMEOUT_INTERVAL_SECONDS=_env_int("ORDER_TIMEOUT_INTERVAL_SECONDS", 300, minimum=30, maximum=86400),
        NOTIFY_FLUSH_INTERVAL_SECONDS=_env_int("NOTIFY_FLUSH_INTERVAL_SECONDS", 60, minimum=30, maximum=86400),
        PAYOUT_INTERVAL_SECONDS=_env_int("PAYOUT_INTERVAL_SECONDS", 900, minimum=30, maximum=86400),
        SWEEP_BATCH_LIMIT=_env_int("SWEEP_BATCH_LIMIT", 200, maximum=5000),
        NOTIFY_MAX_ATTEMPTS=_env_int("NOTIFY_MAX_ATTEMPTS", 5, maximum=50),
        PAYMENTS_PROVIDER=(os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower(),
        PAYSTACK_SECRET_KEY=(os.getenv("PAYSTACK_SECRET_KEY") or "").strip(),
        MESSAGING_PROVIDER=(os.getenv("MESSAGING_PROVIDER") or "mock").strip().lower(),
        TERMII_API_KEY=(os.getenv("TERMII_API_KEY") or "").strip(),
        TERMII_SENDER_ID=(os.getenv("TERMII_SENDER_ID") or "").strip(),
        TERMII_WHATSAPP_SENDER=(os.getenv("TERMII_WHATSAPP_SENDER") or "").strip(),
        CELERY_BROKER_URL=(os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL") or "").strip(),
    )


def _error_payload(code: str, message: str, status: int, details: dict | None = None) -> dict:
    payload = {
        "ok": False,
        "error": code,
        "message": message,
        "status": int(status),
    }
    if details:
        payload["details"] = details
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("SOKO_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SOKO_ENV"] = env

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'soko.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_reset_on_return": "rollback",
                "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
            engine_options["pool_timeout"],
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
    _load_escrow_config(app)

    # CORS configuration
    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db, directory=str(MIGRATIONS_DIR))
    install_request_observers(app)

    @app.errorhandler(EscrowCoreError)
    def _api_domain_error(error: EscrowCoreError):
        try:
            db.session.rollback()
        except Exception:
            pass
        if isinstance(error, EscrowIntegrityError):
            app.logger.error("escrow_integrity_violation path=%s details=%s", request.path, error.details)
        else:
            app.logger.info("request_rejected path=%s error=%s", request.path, error.code)
        return jsonify(_error_payload(error.code, error.message, error.status, error.details or None)), int(error.status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        status = int(error.code or 500)
        return jsonify(_error_payload(error.name, error.description or error.name, status)), status

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        try:
            db.session.rollback()
        except Exception:
            pass
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    app.register_blueprint(orders_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(admin_ops_bp)
    app.register_blueprint(notifications_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": db_state == "ok",
            "service": "soko-escrow",
            "env": env,
            "db": db_state,
            "payments": payment_health(app.config),
            "messaging": messaging_health(app.config),
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload), 200 if db_state == "ok" else 503

    @app.before_request
    def _reset_db_session():
        g.pop("actor", None)
        try:
            db.session.rollback()
        except Exception:
            pass

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("run-order-timeouts")
    @click.option("--limit", type=int, default=None, help="Max orders per sweep")
    def run_order_timeouts_cmd(limit):
        from soko.jobs.order_timeouts import run_order_timeouts

        result = run_order_timeouts(limit=limit)
        click.echo(result)

    @app.cli.command("process-payouts")
    @click.option("--limit", type=int, default=50)
    def process_payouts_cmd(limit):
        from soko.services.payout_service import process_pending_payouts

        click.echo(process_pending_payouts(limit=limit))

    @app.cli.command("flush-notifications")
    @click.option("--limit", type=int, default=100)
    def flush_notifications_cmd(limit):
        from soko.services.notifications import flush_notifications

        click.echo(flush_notifications(limit=limit))

    @app.cli.command("bootstrap-admin")
    def bootstrap_admin():
        allow = (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() == "1"
        if env not in ("dev", "development", "local", "test") and not allow:
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or SOKO_ENV=dev.")
        email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
        if not email:
            raise click.ClickException("ADMIN_EMAIL must be set.")
        u = User.query.filter_by(email=email).first()
        try:
            if u:
                u.role = "admin"
            else:
                u = User(
                    name=email.split("@")[0],
                    email=email,
                    phone=(os.getenv("ADMIN_PHONE") or "").strip() or None,
                    role="admin",
                )
                db.session.add(u)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise click.ClickException("Failed to bootstrap admin.")
        click.echo(f"admin_bootstrap_ok {u.email} id={u.id}")

    return app
