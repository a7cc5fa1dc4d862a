# shieldcsp/__init__.py
"""
App factory for the ShieldCSP scan service.

    - CORS origins from CORS_ORIGINS (an https:// origin marks production)
    - Database URI from SQLALCHEMY_DATABASE_URI (required in production)
    - SECRET_KEY required in production
    - Queue store from REDIS_URL / QUEUE_BACKEND; unset leaves the queue off
      and POST /scans/enqueue answers 503
    - Gunicorn-safe scheduler guard (SCHEDULER_ENABLED)
    - Flask-Migrate manages schema; db.create_all() is only used by tests

create_app(test_config) overrides every env-derived value.
"""

from __future__ import annotations

import logging
import os
import re
import traceback

from flask import Flask, jsonify
from flask_cors import CORS

from .errors import QueueUnavailableError
from .extensions import init_extensions
from . import models
from .services import JOB_QUEUE_KEY

error_logger = logging.getLogger("shieldcsp.errors")


def _is_production() -> bool:
    """Detect production by checking CORS_ORIGINS for https."""
    return os.getenv("CORS_ORIGINS", "").startswith("https://")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def _configure_logging(is_prod: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if is_prod else logging.DEBUG,
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S" if is_prod else "%H:%M:%S",
    )
    logging.getLogger("werkzeug").setLevel(logging.INFO)
    # Quieten noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def _load_config(app: Flask, is_prod: bool) -> None:
    # ── Secret Key ───────────────────────────────────────────────────
    secret_key = os.getenv("SECRET_KEY")
    if is_prod and not secret_key:
        raise RuntimeError(
            "SECRET_KEY environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )
    app.config["SECRET_KEY"] = secret_key or "dev-secret-key-change-me"

    # ── Database ─────────────────────────────────────────────────────
    database_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
    if not database_uri:
        if is_prod:
            raise RuntimeError(
                "SQLALCHEMY_DATABASE_URI environment variable is not set. "
                "Set it to a PostgreSQL connection string, e.g.: "
                "postgresql://shieldcsp:PASSWORD@db:5432/shieldcsp"
            )
        database_uri = "sqlite:///shieldcsp.db"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # ── Queue ────────────────────────────────────────────────────────
    app.config["REDIS_URL"] = os.getenv("REDIS_URL")
    app.config["QUEUE_BACKEND"] = os.getenv("QUEUE_BACKEND", "redis")
    app.config["QUEUE_KEY_PREFIX"] = os.getenv("QUEUE_KEY_PREFIX", "shieldcsp")
    app.config["QUEUE_ATOMIC_CLAIM"] = _env_bool("QUEUE_ATOMIC_CLAIM", True)
    app.config["QUEUE_BATCH_SIZE"] = _env_int("QUEUE_BATCH_SIZE", 5)

    # ── Scanning ─────────────────────────────────────────────────────
    app.config["SCAN_TIMEOUT_MS"] = _env_int("SCAN_TIMEOUT_MS", 15000)
    app.config["SCAN_MAX_REDIRECTS"] = _env_int("SCAN_MAX_REDIRECTS", 5)
    app.config["SCORE_CHANGE_THRESHOLD"] = _env_int("SCORE_CHANGE_THRESHOLD", 5)

    # ── Side effects (notifications / audit) ─────────────────────────
    app.config["SIDE_EFFECT_WORKERS"] = _env_int("SIDE_EFFECT_WORKERS", 4)
    app.config["SIDE_EFFECT_MAX_PENDING"] = _env_int("SIDE_EFFECT_MAX_PENDING", 100)

    # ── Scheduler ────────────────────────────────────────────────────
    app.config["SCHEDULER_ENABLED"] = _env_bool("SCHEDULER_ENABLED", True)
    app.config["QUEUE_PROCESS_INTERVAL_SECONDS"] = _env_int("QUEUE_PROCESS_INTERVAL_SECONDS", 60)
    app.config["SCHEDULE_SWEEP_INTERVAL_MINUTES"] = _env_int("SCHEDULE_SWEEP_INTERVAL_MINUTES", 60)


def _register_error_handlers(app: Flask) -> None:
    # Return clean JSON for all errors; never expose tracebacks.

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({
            "error": "Bad request",
            "message": str(e.description) if hasattr(e, "description") else "The request was malformed or invalid.",
        }), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({
            "error": "Not found",
            "message": "The requested resource was not found.",
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({
            "error": "Method not allowed",
            "message": "This HTTP method is not allowed for this endpoint.",
        }), 405

    @app.errorhandler(QueueUnavailableError)
    def queue_unavailable(e):
        error_logger.warning("Queue unavailable: %s", e)
        return jsonify({
            "error": "Queue unavailable",
            "message": "The scan queue is unavailable. Run the scan synchronously via POST /scans.",
        }), 503

    @app.errorhandler(500)
    def internal_error(e):
        error_logger.error("500 Internal Server Error:\n%s", traceback.format_exc())
        return jsonify({
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        }), 500

    @app.errorhandler(503)
    def service_unavailable(e):
        return jsonify({
            "error": "Service unavailable",
            "message": "The server is temporarily unavailable. Please try again later.",
        }), 503

    @app.errorhandler(Exception)
    def catch_all(e):
        """Catch-all for any unhandled exception. Never leak tracebacks."""
        error_logger.error("Unhandled exception: %s\n%s", str(e), traceback.format_exc())
        return jsonify({
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        }), 500


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__)

    is_prod = _is_production()
    _configure_logging(is_prod)

    # ── CORS ────────────────────────────────────────────────────────
    cors_env = os.getenv("CORS_ORIGINS")
    if cors_env:
        cors_origins = [o.strip() for o in cors_env.split(",") if o.strip()]
    else:
        cors_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            re.compile(r"http://192\.168\.\d+\.\d+:3000"),
        ]

    CORS(app, resources={
        r"/*": {
            "origins": cors_origins,
            "supports_credentials": True,
            "allow_headers": ["Content-Type", "Authorization"],
            "methods": ["GET", "POST", "OPTIONS"],
        }
    })

    _load_config(app, is_prod)
    if test_config:
        app.config.update(test_config)

    # ── Extensions + scan pipeline ───────────────────────────────────
    init_extensions(app)

    # ── Blueprints ───────────────────────────────────────────────────
    from .scans import scans_bp
    from .jobs import queue_bp

    app.register_blueprint(scans_bp)
    app.register_blueprint(queue_bp)

    _register_error_handlers(app)

    @app.get("/health")
    def health():
        queue = app.extensions.get(JOB_QUEUE_KEY)
        return jsonify(
            status="up and running",
            queue=queue.store.name if queue is not None else None,
        ), 200

    # ── Background Scheduler ─────────────────────────────────────────
    # Gunicorn runs multiple workers; set SCHEDULER_ENABLED=true on exactly
    # one of them, or use --preload.
    if app.config["SCHEDULER_ENABLED"]:
        from .scheduler import init_scheduler
        init_scheduler(app)
    else:
        logging.getLogger(__name__).info("Scheduler disabled for this process (SCHEDULER_ENABLED != true)")

    return app
