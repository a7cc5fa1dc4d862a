from datetime import timedelta

import pytest

from shieldcsp.errors import InvalidScanTypeError
from shieldcsp.jobs import JobQueue, MemoryQueueStore, ScanJob
from tests.unit.fakes import FakeClock, ScriptedOrchestrator


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryQueueStore()


@pytest.fixture
def orchestrator():
    return ScriptedOrchestrator()


@pytest.fixture
def queue(db, store, orchestrator, clock):
    q = JobQueue(store, orchestrator=orchestrator, clock=clock)
    q.open()
    return q


def _naive(dt):
    return dt.replace(tzinfo=None)


def _delayed_due_times(queue):
    return [
        int(queue.store._zsets[queue.delayed_key][m])
        for m in queue.store.zrangebyscore(queue.delayed_key, 0, float("inf"))
    ]


# ---------------------------------------------------------------------------
# enqueue / delayed jobs
# ---------------------------------------------------------------------------

def test_future_job_waits_in_delayed_set_until_due(queue, domain, clock, orchestrator):
    queue.enqueue(domain.id, "full", scheduled_for=clock() + timedelta(hours=1))

    assert queue.process_scan_queue() == 0
    assert queue.get_queue_stats() == {"pending": 0, "processing": 0, "delayed": 1, "failed": 0}
    assert orchestrator.calls == []

    clock.advance(hours=1, seconds=1)

    assert queue.process_scan_queue() == 1
    assert queue.get_queue_stats()["delayed"] == 0
    assert orchestrator.calls == [(domain.id, "full")]


def test_past_or_missing_schedule_goes_straight_to_pending(queue, domain, clock):
    queue.enqueue(domain.id, "quick")
    queue.enqueue(domain.id, "quick", scheduled_for=clock() - timedelta(minutes=5))

    assert queue.get_queue_stats()["pending"] == 2
    assert queue.get_queue_stats()["delayed"] == 0


def test_job_ids_are_unique_and_prefixed(queue, domain):
    ids = {queue.enqueue(domain.id) for _ in range(5)}

    assert len(ids) == 5
    assert all(i.startswith("scan-") for i in ids)


def test_invalid_scan_type_is_rejected(queue, domain):
    with pytest.raises(InvalidScanTypeError):
        queue.enqueue(domain.id, "deep")


def test_higher_priority_runs_first(queue, make_domain, orchestrator):
    low = make_domain("low.test")
    high = make_domain("high.test")
    queue.enqueue(low.id, priority=0)
    queue.enqueue(high.id, priority=5)

    queue.process_scan_queue(batch_size=1)

    assert orchestrator.calls == [(high.id, "full")]
    assert queue.get_queue_stats()["pending"] == 1


def test_batch_size_bounds_work_per_call(queue, domain, orchestrator):
    for _ in range(4):
        queue.enqueue(domain.id)

    assert queue.process_scan_queue(batch_size=3) == 3
    assert queue.get_queue_stats()["pending"] == 1


def test_promoted_delayed_job_keeps_its_priority(queue, make_domain, clock, orchestrator):
    later = make_domain("later.test")
    now = make_domain("now.test")
    queue.enqueue(later.id, priority=9, scheduled_for=clock() + timedelta(minutes=1))
    queue.enqueue(now.id, priority=1)
    clock.advance(minutes=2)

    queue.process_scan_queue(batch_size=1)

    assert orchestrator.calls == [(later.id, "full")]


# ---------------------------------------------------------------------------
# retries
# ---------------------------------------------------------------------------

def test_retry_backoff_then_failed_list(queue, domain, clock, orchestrator):
    orchestrator.default = "origin unreachable"
    queue.enqueue(domain.id, max_retries=2)
    start = clock()

    # attempt 1 → retry in 2 minutes
    assert queue.process_scan_queue() == 0
    assert _delayed_due_times(queue) == [int((start + timedelta(minutes=2)).timestamp() * 1000)]

    # not due yet
    clock.advance(minutes=1)
    queue.process_scan_queue()
    assert len(orchestrator.calls) == 1

    # attempt 2 → retry in 4 minutes
    clock.advance(minutes=1)
    second_attempt = clock()
    queue.process_scan_queue()
    assert len(orchestrator.calls) == 2
    assert _delayed_due_times(queue) == [int((second_attempt + timedelta(minutes=4)).timestamp() * 1000)]

    # attempt 3 → retries exhausted
    clock.advance(minutes=4)
    queue.process_scan_queue()
    assert len(orchestrator.calls) == 3
    assert queue.get_queue_stats() == {"pending": 0, "processing": 0, "delayed": 0, "failed": 1}
    failed = queue.failed_jobs()
    assert failed[0].retries == 2
    assert failed[0].last_error == "origin unreachable"

    # nothing picks it up again
    clock.advance(hours=1)
    queue.process_scan_queue()
    assert len(orchestrator.calls) == 3


def test_retry_carries_error_and_attempt_count(queue, domain, clock, orchestrator):
    orchestrator.default = "origin unreachable"
    queue.enqueue(domain.id, max_retries=1)
    queue.process_scan_queue()

    member = queue.store.zrangebyscore(queue.delayed_key, 0, float("inf"))[0]
    job = ScanJob.from_json(member)
    assert job.retries == 1
    assert job.last_error == "origin unreachable"
    assert job.scheduled_for == clock() + timedelta(minutes=2)


def test_inactive_domain_counts_as_failure(queue, make_domain, orchestrator):
    inactive = make_domain("off.test", is_active=False)
    queue.enqueue(inactive.id, max_retries=0)

    assert queue.process_scan_queue() == 0
    assert orchestrator.calls == []
    failed = queue.failed_jobs()
    assert [j.domain_id for j in failed] == [inactive.id]


def test_missing_domain_counts_as_failure(queue, orchestrator):
    queue.enqueue(4242, max_retries=0)

    assert queue.process_scan_queue() == 0
    assert orchestrator.calls == []
    assert queue.get_queue_stats()["failed"] == 1


def test_unreadable_member_is_moved_to_failed(queue, store):
    store.zadd(queue.queue_key, "not json", 0)

    assert queue.process_scan_queue() == 0
    assert queue.get_queue_stats() == {"pending": 0, "processing": 0, "delayed": 0, "failed": 1}


# ---------------------------------------------------------------------------
# claiming
# ---------------------------------------------------------------------------

class InterleavingStore(MemoryQueueStore):
    """Runs `hook` right after the first read of the priority set."""

    def __init__(self):
        super().__init__()
        self.hook = None

    def zrevrange(self, key, start, stop):
        result = super().zrevrange(key, start, stop)
        if self.hook is not None:
            hook, self.hook = self.hook, None
            hook()
        return result


def test_non_atomic_claim_can_hand_one_job_to_two_workers(db, domain, clock):
    store = InterleavingStore()
    worker_a = JobQueue(store, atomic_claim=False, clock=clock)
    worker_b = JobQueue(store, atomic_claim=False, clock=clock)
    worker_a.enqueue(domain.id)

    claimed_by_b = []
    store.hook = lambda: claimed_by_b.append(worker_b._claim())
    claimed_by_a = worker_a._claim()

    assert claimed_by_a is not None
    assert claimed_by_b == [claimed_by_a]


def test_atomic_claim_hands_each_job_out_once(db, domain, clock):
    store = InterleavingStore()
    worker_a = JobQueue(store, atomic_claim=True, clock=clock)
    worker_b = JobQueue(store, atomic_claim=True, clock=clock)
    worker_a.enqueue(domain.id)

    first = worker_a._claim()
    second = worker_b._claim()

    assert first is not None
    assert second is None
    assert store.zcard(worker_a.processing_key) == 1


# ---------------------------------------------------------------------------
# automated scheduling
# ---------------------------------------------------------------------------

def test_schedule_automated_scans_picks_due_domains(queue, make_domain, clock):
    now = _naive(clock())
    never = make_domain("never.test", scan_frequency="hourly")
    stale_daily = make_domain("daily.test", scan_frequency="daily", last_scanned_at=now - timedelta(days=2))
    make_domain("weekly.test", scan_frequency="weekly", last_scanned_at=now - timedelta(days=1))
    make_domain("manual.test", scan_frequency="manual")
    make_domain("inactive.test", scan_frequency="hourly", is_active=False)

    assert queue.schedule_automated_scans() == 2

    members = queue.store.zrevrange(queue.queue_key, 0, -1)
    jobs = sorted((ScanJob.from_json(m) for m in members), key=lambda j: j.domain_id)
    assert [j.domain_id for j in jobs] == sorted([never.id, stale_daily.id])
    assert all(j.priority == 1 and j.max_retries == 2 for j in jobs)


def test_schedule_uses_each_frequency_interval(queue, make_domain, clock):
    now = _naive(clock())
    make_domain("hourly.test", scan_frequency="hourly", last_scanned_at=now - timedelta(minutes=90))
    make_domain("daily.test", scan_frequency="daily", last_scanned_at=now - timedelta(hours=2))

    assert queue.schedule_automated_scans() == 1


def test_schedule_skips_domains_with_waiting_jobs(queue, make_domain):
    make_domain("hourly.test", scan_frequency="hourly")

    assert queue.schedule_automated_scans() == 1
    assert queue.schedule_automated_scans() == 0


# ---------------------------------------------------------------------------
# maintenance
# ---------------------------------------------------------------------------

def test_requeue_stale_processing_jobs(queue, domain, clock):
    queue.enqueue(domain.id, priority=3)
    member = queue._claim()
    assert queue.get_queue_stats()["processing"] == 1

    clock.advance(minutes=10)
    assert queue.requeue_stale(max_age_seconds=1800) == []

    clock.advance(minutes=25)
    preview = queue.requeue_stale(max_age_seconds=1800, dry_run=True)
    assert [j.domain_id for j in preview] == [domain.id]
    assert queue.get_queue_stats()["processing"] == 1

    requeued = queue.requeue_stale(max_age_seconds=1800)
    assert [j.priority for j in requeued] == [3]
    assert queue.get_queue_stats()["processing"] == 0
    assert queue.store.zrevrange(queue.queue_key, 0, -1) == [member]


def test_memory_store_ties_follow_reverse_lexicographic_order():
    store = MemoryQueueStore()
    for member in ("b", "a", "c"):
        store.zadd("k", member, 1)

    assert store.zrevrange("k", 0, -1) == ["c", "b", "a"]
    assert store.zrangebyscore("k", 0, 5) == ["a", "b", "c"]
    assert store.claim_next("k", "p", 10) == "c"


def test_failed_list_records_the_final_error(queue, domain, orchestrator):
    orchestrator.outcomes = ["origin down"]
    queue.enqueue(domain.id, max_retries=0)

    queue.process_scan_queue()

    assert queue.failed_jobs()[0].last_error == "origin down"
