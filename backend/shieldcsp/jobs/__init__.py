from shieldcsp.jobs.job_queue import JobQueue, ScanJob
from shieldcsp.jobs.store import MemoryQueueStore, QueueStore, RedisQueueStore, build_queue_store
from shieldcsp.jobs.routes import queue_bp
