"""
Redis-based job queue for maintenance work

Uses LPUSH/BRPOP: producers (HTTP surface, operators) push, exactly one
worker pops each job.

Queues:
- queue:maintenance: {"task": "decay", "owner_id": "...", "params": {...}}
"""
import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as redis


class JobQueue:
    """
    Redis-based job queue

    Workers use BRPOP (blocking pop with timeout) so a quiet queue never
    blocks shutdown for longer than `timeout` seconds.
    """

    MAINTENANCE_QUEUE = 'queue:maintenance'

    def __init__(self, redis_url: str):
        self.redis = None
        self.redis_url = redis_url

    async def connect(self):
        """Initialize Redis connection"""
        self.redis = await redis.from_url(self.redis_url, decode_responses=True)

    async def close(self):
        """Close Redis connection"""
        if self.redis:
            await self.redis.close()

    async def enqueue(self, queue_name: str, job: dict):
        """
        Add job to queue

        Example:
            await queue.enqueue('queue:maintenance', {
                'task': 'consolidate',
                'owner_id': 'user_1',
                'params': {'mode': 'force'}
            })
        """
        await self.redis.lpush(queue_name, json.dumps(job))

    async def dequeue(self, queue_name: str, timeout: int = 5) -> Optional[dict]:
        """
        Blocking pop from queue (BRPOP)

        Args:
            queue_name: Name of queue to pop from
            timeout: Timeout in seconds

        Returns:
            Job dict or None on timeout
        """
        result = await self.redis.brpop(queue_name, timeout=timeout)
        if result:
            # result is a tuple: (queue_name, job_json)
            return json.loads(result[1])
        return None

    async def queue_length(self, queue_name: str) -> int:
        """Get current queue length"""
        return await self.redis.llen(queue_name)

    async def enqueue_maintenance(
        self, task: str, owner_id: str, params: Optional[dict] = None, queue_name: Optional[str] = None
    ):
        """Queue one maintenance task for one owner"""
        job = {
            'task': task,
            'owner_id': owner_id,
            'params': params or {},
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }
        await self.enqueue(queue_name or self.MAINTENANCE_QUEUE, job)
