"""
Background work: the Redis maintenance queue and its worker, and the
recurring-task scheduler.

Entry points:
- memory_core.workers.maintenance_worker:main
- memory_core.workers.scheduler:main
"""
from .job_queue import JobQueue
from .worker_base import BaseWorker

__all__ = ['JobQueue', 'BaseWorker']
