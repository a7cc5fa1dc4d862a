#!/usr/bin/env python3
"""
cleanup.py

Returns scan jobs stuck in the processing set to the queue. A job stays in
the processing set when the worker running it died mid-scan (deploy, OOM,
serverless timeout); nothing else ever picks it up again.

Also prints the most recent entries of the failed list for inspection.

Usage:
    # Dry run (shows what would be requeued, no changes):
    python cleanup.py

    # Requeue jobs claimed more than 30 minutes ago:
    python cleanup.py --commit

    # Custom cutoff:
    python cleanup.py --commit --max-age 600

Run from backend/ (where shieldcsp/ lives).
"""

import argparse
import os
import sys

# Ensure the package is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from shieldcsp import create_app
from shieldcsp.errors import QueueUnavailableError
from shieldcsp.services import get_job_queue

DEFAULT_MAX_AGE_SECONDS = 30 * 60
FAILED_PREVIEW = 20


def cleanup(commit=False, max_age_seconds=DEFAULT_MAX_AGE_SECONDS):
    app = create_app({"SCHEDULER_ENABLED": False, "SIDE_EFFECT_WORKERS": 0})

    with app.app_context():
        try:
            queue = get_job_queue()
            stats = queue.get_queue_stats()
        except QueueUnavailableError as e:
            print(f"Queue unavailable: {e}")
            return 1

        print(
            f"Queue: {stats['pending']} pending, {stats['processing']} processing, "
            f"{stats['delayed']} delayed, {stats['failed']} failed\n"
        )

        stale = queue.requeue_stale(max_age_seconds, dry_run=not commit)

        if not stale:
            print(f"No jobs stuck in processing for more than {max_age_seconds}s.")
        else:
            for job in stale:
                print(f"  {job.id:<32} domain={job.domain_id:<6} type={job.scan_type:<12} retries={job.retries}")

            print(f"\n{'=' * 60}")
            if commit:
                print(f"DONE: {len(stale)} stale job(s) requeued.")
            else:
                print(f"DRY RUN: {len(stale)} job(s) would be requeued. Run with --commit to apply.")

        failed = queue.failed_jobs(limit=FAILED_PREVIEW)
        if failed:
            print(f"\nMost recent failed jobs ({len(failed)} shown):")
            for job in failed:
                print(f"  {job.id:<32} domain={job.domain_id:<6} {job.last_error or ''}")

    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Requeue scan jobs stuck in processing.")
    parser.add_argument("--commit", action="store_true", help="apply changes (default is a dry run)")
    parser.add_argument(
        "--max-age", type=int, default=DEFAULT_MAX_AGE_SECONDS,
        help=f"seconds since claim before a job counts as stale (default {DEFAULT_MAX_AGE_SECONDS})",
    )
    args = parser.parse_args()
    sys.exit(cleanup(commit=args.commit, max_age_seconds=args.max_age))
