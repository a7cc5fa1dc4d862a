# shieldcsp/services.py
"""
Caller-facing operations, used by the blueprints, the background scheduler
and backend/cleanup.py. All of them need an app context.

    run_scan_sync(domain_id, scan_type)       → ScanResult
    enqueue_scan(domain_id, scan_type, ...)   → job id (QueueUnavailableError)
    process_queue(batch_size)                 → jobs processed
    schedule_automated_scans()                → jobs enqueued
    get_queue_stats()                         → {pending, processing, delayed, failed}

The orchestrator and job queue are built once in create_app() and kept in
app.extensions.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from flask import current_app

from shieldcsp.errors import InvalidScanTypeError, QueueUnavailableError
from shieldcsp.models import SCAN_TYPES

logger = logging.getLogger(__name__)

ORCHESTRATOR_KEY = "shieldcsp.orchestrator"
JOB_QUEUE_KEY = "shieldcsp.job_queue"
DISPATCHER_KEY = "shieldcsp.dispatcher"


def get_orchestrator():
    return current_app.extensions[ORCHESTRATOR_KEY]


def get_job_queue():
    """The app's JobQueue, or QueueUnavailableError when no store is configured."""
    queue = current_app.extensions.get(JOB_QUEUE_KEY)
    if queue is None:
        raise QueueUnavailableError("Scan queue is not configured (set REDIS_URL or QUEUE_BACKEND=memory)")
    return queue


def _check_scan_type(scan_type: str) -> None:
    if scan_type not in SCAN_TYPES:
        raise InvalidScanTypeError(
            f"Invalid scan type '{scan_type}'. Must be one of: {', '.join(SCAN_TYPES)}"
        )


def run_scan_sync(domain_id: int, scan_type: str = "full"):
    """Run one scan now. No retry: a failure is returned to the caller as-is."""
    _check_scan_type(scan_type)
    return get_orchestrator().execute(domain_id, scan_type)


def enqueue_scan(
    domain_id: int,
    scan_type: str = "full",
    priority: int = 0,
    scheduled_for: Optional[datetime] = None,
    max_retries: int = 3,
) -> str:
    _check_scan_type(scan_type)
    return get_job_queue().enqueue(
        domain_id,
        scan_type,
        priority=priority,
        scheduled_for=scheduled_for,
        max_retries=max_retries,
    )


def process_queue(batch_size: int = 1) -> int:
    return get_job_queue().process_scan_queue(batch_size=batch_size)


def schedule_automated_scans() -> int:
    return get_job_queue().schedule_automated_scans()


def get_queue_stats() -> Dict[str, int]:
    return get_job_queue().get_queue_stats()
