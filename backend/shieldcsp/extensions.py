# shieldcsp/extensions.py
from __future__ import annotations

import atexit
import logging

from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

db = SQLAlchemy()
migrate = Migrate()


@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, _connection_record):
    # SQLite only; FK cascades are off by default there
    if "sqlite" in type(dbapi_connection).__module__.lower():
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    init_scan_pipeline(app)


def init_scan_pipeline(app):
    """
    Build the side-effect dispatcher, orchestrator and job queue once per app
    and park them in app.extensions (see shieldcsp.services).
    """
    from shieldcsp.audit import record_security_event
    from shieldcsp.errors import QueueUnavailableError
    from shieldcsp.jobs.job_queue import JobQueue
    from shieldcsp.jobs.store import build_queue_store
    from shieldcsp.notifications import NotificationService, SideEffectDispatcher
    from shieldcsp.scanner import ScanOrchestrator
    from shieldcsp.services import DISPATCHER_KEY, JOB_QUEUE_KEY, ORCHESTRATOR_KEY

    cfg = app.config

    dispatcher = SideEffectDispatcher(
        app=app,
        max_workers=cfg["SIDE_EFFECT_WORKERS"],
        max_pending=cfg["SIDE_EFFECT_MAX_PENDING"],
    )
    atexit.register(dispatcher.shutdown)

    orchestrator = ScanOrchestrator(
        notifier=NotificationService(),
        audit_recorder=record_security_event,
        dispatcher=dispatcher,
        timeout_ms=cfg["SCAN_TIMEOUT_MS"],
        max_redirects=cfg["SCAN_MAX_REDIRECTS"],
        score_change_threshold=cfg["SCORE_CHANGE_THRESHOLD"],
    )

    job_queue = None
    store = build_queue_store(cfg)
    if store is not None:
        job_queue = JobQueue(
            store,
            orchestrator=orchestrator,
            atomic_claim=cfg["QUEUE_ATOMIC_CLAIM"],
            key_prefix=cfg["QUEUE_KEY_PREFIX"],
        )
        try:
            job_queue.open()
        except QueueUnavailableError as e:
            # Retried lazily on first use
            logger.warning(f"Queue store not reachable at startup: {e}")
        atexit.register(job_queue.close)

    app.extensions[DISPATCHER_KEY] = dispatcher
    app.extensions[ORCHESTRATOR_KEY] = orchestrator
    app.extensions[JOB_QUEUE_KEY] = job_queue
