from shieldcsp import scheduler
from shieldcsp.services import JOB_QUEUE_KEY


def test_sweep_job_enqueues_due_domains(app, make_domain):
    make_domain("hourly.test", scan_frequency="hourly")
    make_domain("manual.test")

    scheduler._sweep_schedules(app)

    assert app.extensions[JOB_QUEUE_KEY].get_queue_stats()["pending"] == 1


def test_worker_job_processes_a_batch(app, db):
    queue = app.extensions[JOB_QUEUE_KEY]
    queue.enqueue(4242, max_retries=0)
    app.config["QUEUE_BATCH_SIZE"] = 5

    scheduler._process_queue(app)

    assert queue.get_queue_stats() == {"pending": 0, "processing": 0, "delayed": 0, "failed": 1}


def test_jobs_skip_quietly_without_a_queue(app):
    app.extensions[JOB_QUEUE_KEY] = None

    scheduler._process_queue(app)
    scheduler._sweep_schedules(app)


def test_init_scheduler_registers_both_jobs(app):
    try:
        scheduler.init_scheduler(app)
        jobs = {job.id: job for job in scheduler._scheduler.get_jobs()}

        assert set(jobs) == {"scan_queue_worker", "scan_schedule_sweep"}
        assert all(job.max_instances == 1 for job in jobs.values())

        # A second call is a no-op
        running = scheduler._scheduler
        scheduler.init_scheduler(app)
        assert scheduler._scheduler is running
    finally:
        scheduler.shutdown_scheduler()

    assert scheduler._scheduler is None
