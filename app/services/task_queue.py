"""
Redis list backed task queue.

Envelopes move from the queue list to an in-flight list when reserved and are
removed when acked. Whatever a crashed worker left in flight is put back on the
queue by `recover_inflight` when the next worker starts. The queue assumes a
single consumer process.
"""

import json
from datetime import UTC, datetime
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

QUEUE_KEY = "unsub_update:queue"
INFLIGHT_KEY = "unsub_update:queue:inflight"


class TaskQueueError(Exception):
    """Raised when a task could not be handed to the queue."""

    def __init__(self, message: str, task_name: str | None = None):
        super().__init__(message)
        self.task_name = task_name


class RedisTaskQueue:
    def __init__(self, redis=None, queue_key: str = QUEUE_KEY, inflight_key: str = INFLIGHT_KEY):
        self.redis = redis or fast_redis
        self.queue_key = queue_key
        self.inflight_key = inflight_key

    async def enqueue(self, task_name: str, payload: dict[str, Any]) -> None:
        """
        Raises:
            TaskQueueError: If the envelope could not be pushed
        """
        envelope = json.dumps(
            {
                "task": task_name,
                "payload": payload,
                "enqueued_at": datetime.now(UTC).isoformat(),
            },
            default=str,
        )
        pushed = await self.redis.push_to_list(self.queue_key, envelope)
        if not pushed:
            raise TaskQueueError("Failed to enqueue task", task_name=task_name)

        logger.debug("Task enqueued", task=task_name, queue=self.queue_key)

    async def reserve(self, timeout: int = 5) -> str | None:
        """Move the oldest envelope to the in-flight list and return it raw."""
        return await self.redis.pop_to_inflight(self.queue_key, self.inflight_key, timeout=timeout)

    async def ack(self, raw: str) -> bool:
        return await self.redis.ack_from_inflight(self.inflight_key, raw)

    async def recover_inflight(self) -> int:
        """Requeue envelopes left in flight by a previous worker."""
        moved = await self.redis.requeue_inflight(self.inflight_key, self.queue_key)
        if moved:
            logger.warning("Requeued orphaned in-flight tasks", count=moved, queue=self.queue_key)
        return moved


def decode_envelope(raw: str) -> tuple[str, dict[str, Any]]:
    """
    Raises:
        ValueError: If the envelope is not a JSON object with a task name
    """
    data = json.loads(raw)
    if not isinstance(data, dict) or not data.get("task"):
        raise ValueError("Envelope has no task name")
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise ValueError("Envelope payload is not an object")
    return str(data["task"]), payload
