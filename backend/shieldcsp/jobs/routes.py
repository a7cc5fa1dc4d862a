# =============================================================================
# File: shieldcsp/jobs/routes.py
# Description: Worker / cron endpoints for the scan queue.
#
#   POST /queue/process?batchSize=N   run up to N queued jobs
#   GET  /queue/stats                 pending / processing / delayed / failed
#   GET  /queue/failed?limit=N        most recent failed jobs
#   POST /queue/schedule              enqueue due automated scans
#
# QueueUnavailableError surfaces as 503 through the app error handler.
# =============================================================================

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from shieldcsp import services

logger = logging.getLogger(__name__)

queue_bp = Blueprint("queue", __name__, url_prefix="/queue")

MAX_BATCH_SIZE = 50


@queue_bp.post("/process")
def process_queue():
    batch_size = request.args.get("batchSize", default=1, type=int)
    if batch_size is None or batch_size < 1:
        return jsonify(error="batchSize must be a positive integer"), 400
    batch_size = min(batch_size, MAX_BATCH_SIZE)

    processed = services.process_queue(batch_size=batch_size)
    stats = services.get_queue_stats()

    return jsonify(processed=processed, stats=stats), 200


@queue_bp.get("/stats")
def queue_stats():
    return jsonify(stats=services.get_queue_stats()), 200


@queue_bp.get("/failed")
def failed_jobs():
    limit = request.args.get("limit", default=50, type=int)
    if limit is None or limit < 1:
        return jsonify(error="limit must be a positive integer"), 400

    jobs = services.get_job_queue().failed_jobs(limit=min(limit, 500))
    return jsonify(jobs=[j.to_dict() for j in jobs]), 200


@queue_bp.post("/schedule")
def schedule_scans():
    scheduled = services.schedule_automated_scans()
    return jsonify(
        scheduled=scheduled,
        message=f"Scheduled {scheduled} automated scans",
    ), 200
