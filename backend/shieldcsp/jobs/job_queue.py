# shieldcsp/jobs/job_queue.py
"""
Scan job queue.

Keys (prefix from QUEUE_KEY_PREFIX, default "shieldcsp"):

    <p>:scan-queue           sorted set, score = priority (higher first)
    <p>:scan-queue:delayed   sorted set, score = due time (epoch ms)
    <p>:scan-processing      sorted set, score = claim time (epoch ms)
    <p>:scan-failed          list, newest first

Members are the JSON-serialized ScanJob. A job is identified by its exact
serialized string, so every state change (retries, scheduledFor) produces a
new member.

Claiming:
    atomic_claim=True   one store-side pop + claim (claim_next)
    atomic_claim=False  read top → remove → add to processing, as three
                        separate calls. Two workers can claim the same job.
                        Kept for compatibility testing only.

Equal-priority jobs have no defined relative order.

Worker methods need a Flask app context (domain re-validation and the
orchestrator both use db.session).
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from shieldcsp.errors import InvalidScanTypeError, QueueUnavailableError
from shieldcsp.extensions import db
from shieldcsp.models import SCAN_TYPES, Domain
from shieldcsp.jobs.store import QueueStore

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "shieldcsp"
DEFAULT_MAX_RETRIES = 3

AUTOMATED_PRIORITY = 1
AUTOMATED_MAX_RETRIES = 2

FREQUENCY_INTERVALS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def new_job_id(now: datetime) -> str:
    return f"scan-{to_epoch_ms(now)}-{uuid.uuid4().hex[:9]}"


@dataclass
class ScanJob:
    id: str
    domain_id: int
    scan_type: str = "full"
    priority: int = 0
    retries: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    created_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "domainId": self.domain_id,
            "scanType": self.scan_type,
            "priority": self.priority,
            "retries": self.retries,
            "maxRetries": self.max_retries,
            "createdAt": _iso(self.created_at),
            "scheduledFor": _iso(self.scheduled_for),
            "lastError": self.last_error,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "ScanJob":
        data = json.loads(raw)
        return cls(
            id=data["id"],
            domain_id=int(data["domainId"]),
            scan_type=data.get("scanType") or "full",
            priority=int(data.get("priority") or 0),
            retries=int(data.get("retries") or 0),
            max_retries=int(data.get("maxRetries", DEFAULT_MAX_RETRIES)),
            created_at=_parse_iso(data.get("createdAt")),
            scheduled_for=_parse_iso(data.get("scheduledFor")),
            last_error=data.get("lastError"),
        )


class JobQueue:

    def __init__(
        self,
        store: QueueStore,
        orchestrator=None,
        atomic_claim: bool = True,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.atomic_claim = atomic_claim
        self.clock = clock
        self._opened = False

        self.queue_key = f"{key_prefix}:scan-queue"
        self.delayed_key = f"{key_prefix}:scan-queue:delayed"
        self.processing_key = f"{key_prefix}:scan-processing"
        self.failed_key = f"{key_prefix}:scan-failed"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        if not self._opened:
            self.store.open()
            self._opened = True

    def close(self) -> None:
        if self._opened:
            self.store.close()
            self._opened = False

    def _ensure_open(self) -> None:
        # Retried on every call so a store that was down at startup recovers
        if not self._opened:
            self.open()

    def _now_ms(self) -> int:
        return to_epoch_ms(self.clock())

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        domain_id: int,
        scan_type: str = "full",
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
        max_retries: Optional[int] = None,
    ) -> str:
        """Queue a scan. Returns the job id. Raises QueueUnavailableError."""
        if scan_type not in SCAN_TYPES:
            raise InvalidScanTypeError(f"Invalid scan type '{scan_type}'")

        self._ensure_open()

        now = self.clock()
        job = ScanJob(
            id=new_job_id(now),
            domain_id=domain_id,
            scan_type=scan_type,
            priority=priority or 0,
            max_retries=DEFAULT_MAX_RETRIES if max_retries is None else max_retries,
            created_at=now,
            scheduled_for=scheduled_for,
        )
        member = job.to_json()

        due_ms = to_epoch_ms(scheduled_for) if scheduled_for is not None else None
        if due_ms is not None and due_ms > to_epoch_ms(now):
            self.store.zadd(self.delayed_key, member, due_ms)
            logger.info(f"Job {job.id} delayed until {_iso(scheduled_for)} (domain {domain_id})")
        else:
            self.store.zadd(self.queue_key, member, job.priority)
            logger.info(f"Job {job.id} queued (domain {domain_id}, priority {job.priority})")

        return job.id

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def process_scan_queue(self, batch_size: int = 1) -> int:
        """
        Promote due delayed jobs, then run up to batch_size jobs.
        Returns the number of jobs that succeeded.
        """
        self._ensure_open()
        if self.orchestrator is None:
            raise RuntimeError("JobQueue has no orchestrator; cannot process jobs")

        processed = 0
        self._move_delayed_jobs()

        for _ in range(max(1, batch_size)):
            member = self._claim()
            if member is None:
                break

            try:
                processed += self._handle(member)
            except QueueUnavailableError:
                raise
            except Exception:
                logger.exception("Error processing queued job")

        return processed

    def _claim(self) -> Optional[str]:
        claim_ms = self._now_ms()

        if self.atomic_claim:
            return self.store.claim_next(self.queue_key, self.processing_key, claim_ms)

        top = self.store.zrevrange(self.queue_key, 0, 0)
        if not top:
            return None
        member = top[0]
        self.store.zrem(self.queue_key, member)
        self.store.zadd(self.processing_key, member, claim_ms)
        return member

    def _handle(self, member: str) -> int:
        try:
            job = ScanJob.from_json(member)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Dropping unreadable job to failed list: {e}")
            self.store.zrem(self.processing_key, member)
            self.store.lpush(self.failed_key, member)
            return 0

        success, error = self._run_job(job)
        self.store.zrem(self.processing_key, member)

        if success:
            logger.info(f"Processed scan job {job.id} for domain {job.domain_id}")
            return 1

        if job.retries < job.max_retries:
            job.retries += 1
            retry_at = self.clock() + timedelta(minutes=2 ** job.retries)
            job.scheduled_for = retry_at
            job.last_error = error
            self.store.zadd(self.delayed_key, job.to_json(), to_epoch_ms(retry_at))
            logger.warning(
                f"Retrying job {job.id} (attempt {job.retries}/{job.max_retries}) "
                f"at {_iso(retry_at)}: {error}"
            )
        else:
            job.last_error = error
            self.store.lpush(self.failed_key, job.to_json())
            logger.error(f"Job {job.id} failed after {job.max_retries} retries: {error}")

        return 0

    def _run_job(self, job: ScanJob):
        """Returns (success, error)."""
        try:
            domain = db.session.get(Domain, job.domain_id)
            if domain is None:
                return False, "Domain not found"
            if not domain.is_active:
                return False, "Domain is not active"

            result = self.orchestrator.execute(job.domain_id, job.scan_type)
            if not result.success:
                return False, result.error or "Scan execution failed"
            return True, None

        except Exception as e:
            db.session.rollback()
            logger.exception(f"Job {job.id} raised during execution")
            return False, str(e) or type(e).__name__

    def _move_delayed_jobs(self) -> int:
        ready = self.store.zrangebyscore(self.delayed_key, 0, self._now_ms())
        moved = 0
        for member in ready:
            try:
                priority = ScanJob.from_json(member).priority
            except (ValueError, KeyError, TypeError):
                priority = 0
            self.store.zrem(self.delayed_key, member)
            self.store.zadd(self.queue_key, member, priority)
            moved += 1
        if moved:
            logger.debug(f"Promoted {moved} delayed job(s)")
        return moved

    # ------------------------------------------------------------------
    # Scheduling sweep
    # ------------------------------------------------------------------

    def schedule_automated_scans(self) -> int:
        """
        Enqueue one low-priority job per active, due domain. A domain is due
        when it has never been scanned or its last scan is older than its
        frequency interval. Domains that already have a job waiting are
        skipped.
        """
        self._ensure_open()

        now = self.clock()
        # Domain timestamps are stored naive UTC
        now_naive = now.astimezone(timezone.utc).replace(tzinfo=None) if now.tzinfo else now

        candidates = (
            Domain.query
            .filter(
                Domain.is_active.is_(True),
                Domain.scan_frequency.in_(list(FREQUENCY_INTERVALS)),
            )
            .order_by(Domain.id)
            .all()
        )
        waiting = self._domains_with_jobs()

        enqueued = 0
        for domain in candidates:
            interval = FREQUENCY_INTERVALS[domain.scan_frequency]
            last = domain.last_scanned_at

            if last is not None and last > now_naive - interval:
                continue
            if domain.id in waiting:
                logger.debug(f"Domain {domain.id} already has a queued job, skipping")
                continue

            next_due = now if last is None else (last + interval).replace(tzinfo=timezone.utc)

            try:
                self.enqueue(
                    domain.id,
                    "full",
                    priority=AUTOMATED_PRIORITY,
                    scheduled_for=next_due,
                    max_retries=AUTOMATED_MAX_RETRIES,
                )
                enqueued += 1
            except QueueUnavailableError:
                raise
            except Exception:
                logger.exception(f"Failed to schedule scan for domain {domain.id}")

        logger.info(f"Automated scan sweep: {enqueued} job(s) enqueued from {len(candidates)} candidate(s)")
        return enqueued

    def _domains_with_jobs(self) -> Set[int]:
        domain_ids: Set[int] = set()
        for key in (self.queue_key, self.delayed_key, self.processing_key):
            for member in self.store.zrevrange(key, 0, -1):
                try:
                    domain_ids.add(ScanJob.from_json(member).domain_id)
                except (ValueError, KeyError, TypeError):
                    continue
        return domain_ids

    # ------------------------------------------------------------------
    # Introspection / maintenance
    # ------------------------------------------------------------------

    def get_queue_stats(self) -> Dict[str, int]:
        self._ensure_open()
        return {
            "pending": self.store.zcard(self.queue_key),
            "processing": self.store.zcard(self.processing_key),
            "delayed": self.store.zcard(self.delayed_key),
            "failed": self.store.llen(self.failed_key),
        }

    def failed_jobs(self, limit: int = 50) -> List[ScanJob]:
        self._ensure_open()
        jobs = []
        for member in self.store.lrange(self.failed_key, 0, max(0, limit - 1)):
            try:
                jobs.append(ScanJob.from_json(member))
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping unreadable failed job")
        return jobs

    def requeue_stale(self, max_age_seconds: int, dry_run: bool = False) -> List[ScanJob]:
        """
        Return jobs stuck in the processing set longer than max_age_seconds
        (a worker died mid-scan) to the priority set.
        """
        self._ensure_open()
        cutoff = self._now_ms() - int(max_age_seconds * 1000)
        stale = self.store.zrangebyscore(self.processing_key, 0, cutoff)

        requeued: List[ScanJob] = []
        for member in stale:
            try:
                job = ScanJob.from_json(member)
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping unreadable processing entry")
                continue

            if not dry_run:
                if self.store.zrem(self.processing_key, member):
                    self.store.zadd(self.queue_key, member, job.priority)
                else:
                    continue
            requeued.append(job)

        if requeued and not dry_run:
            logger.warning(f"Requeued {len(requeued)} stale processing job(s)")
        return requeued
