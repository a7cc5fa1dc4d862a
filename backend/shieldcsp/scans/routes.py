# =============================================================================
# File: shieldcsp/scans/routes.py
# Description: Scan routes: run a scan now, queue a scan, read stored scans.
#
#   POST /scans            synchronous scan (no retry; failure is terminal)
#   POST /scans/enqueue    queue a scan; 503 when the queue is unavailable
#   GET  /scans            recent scans, optionally ?domainId=
#   GET  /scans/<id>       one scan with its per-header scores
#
# No authentication here; callers sit behind the API gateway.
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from shieldcsp.errors import InvalidScanTypeError
from shieldcsp.extensions import db
from shieldcsp.models import Domain, Scan
from shieldcsp import services

logger = logging.getLogger(__name__)

scans_bp = Blueprint("scans", __name__, url_prefix="/scans")

RECENT_SCANS_LIMIT = 20


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _int_or_none(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _domain_id(body):
    value = body.get("domainId")
    if value is None:
        value = body.get("domain_id")
    return _int_or_none(value)


def _parse_datetime(value):
    """ISO-8601 string → aware UTC datetime. Raises ValueError."""
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# POST /scans: run now
# ---------------------------------------------------------------------------

@scans_bp.post("")
def run_scan():
    body = request.get_json(silent=True) or {}
    domain_id = _domain_id(body)
    scan_type = body.get("scanType") or body.get("scan_type") or "full"

    if domain_id is None:
        return jsonify(error="domainId is required"), 400

    try:
        result = services.run_scan_sync(domain_id, scan_type)
    except InvalidScanTypeError as e:
        return jsonify(error=str(e)), 400

    if not result.success:
        if result.scan_id is None and result.error == "Domain not found":
            return jsonify(error="domain not found"), 404
        return jsonify(
            error="scan failed",
            message=result.error,
            scanId=result.scan_id,
        ), 502

    scan = db.session.get(Scan, result.scan_id)
    return jsonify(
        scan=scan.to_dict(include_scores=True) if scan else None,
        previousScore=result.previous_score,
        scoreDelta=result.score_delta,
        durationMs=result.duration_ms,
    ), 200


# ---------------------------------------------------------------------------
# POST /scans/enqueue: queue for a worker
# ---------------------------------------------------------------------------

@scans_bp.post("/enqueue")
def enqueue_scan():
    body = request.get_json(silent=True) or {}
    domain_id = _domain_id(body)
    scan_type = body.get("scanType") or body.get("scan_type") or "full"

    if domain_id is None:
        return jsonify(error="domainId is required"), 400

    priority = _int_or_none(body.get("priority", 0))
    if priority is None:
        return jsonify(error="priority must be an integer"), 400

    max_retries = _int_or_none(body.get("maxRetries", 3))
    if max_retries is None or max_retries < 0:
        return jsonify(error="maxRetries must be a non-negative integer"), 400

    scheduled_for = None
    if body.get("scheduledFor"):
        try:
            scheduled_for = _parse_datetime(body["scheduledFor"])
        except ValueError:
            return jsonify(error="scheduledFor must be an ISO-8601 timestamp"), 400

    if db.session.get(Domain, domain_id) is None:
        return jsonify(error="domain not found"), 404

    try:
        job_id = services.enqueue_scan(
            domain_id,
            scan_type,
            priority=priority,
            scheduled_for=scheduled_for,
            max_retries=max_retries,
        )
    except InvalidScanTypeError as e:
        return jsonify(error=str(e)), 400
    # QueueUnavailableError → 503 via the app error handler

    return jsonify(jobId=job_id, domainId=domain_id, scanType=scan_type), 202


# ---------------------------------------------------------------------------
# GET /scans, GET /scans/<id>
# ---------------------------------------------------------------------------

@scans_bp.get("")
def list_scans():
    query = Scan.query

    domain_id = request.args.get("domainId")
    if domain_id is not None:
        domain_id = _int_or_none(domain_id)
        if domain_id is None:
            return jsonify(error="domainId must be an integer"), 400
        query = query.filter(Scan.domain_id == domain_id)

    scans = (
        query
        .order_by(Scan.scanned_at.desc(), Scan.id.desc())
        .limit(RECENT_SCANS_LIMIT)
        .all()
    )
    return jsonify(scans=[s.to_dict() for s in scans]), 200


@scans_bp.get("/<int:scan_id>")
def get_scan(scan_id: int):
    scan = db.session.get(Scan, scan_id)
    if not scan:
        return jsonify(error="scan not found"), 404
    return jsonify(scan.to_dict(include_scores=True)), 200
