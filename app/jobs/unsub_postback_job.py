"""
Unsub update postback task.

Runs on the worker, possibly long after the dispatcher queued it, so every
gate is re-checked against fresh state before the POST. The task never
raises: gating outcomes, endpoint failures and unexpected errors all end as a
logged outcome, and nothing is retried.
"""

import asyncio
import time
from collections import Counter
from enum import StrEnum

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, log_postback_result
from app.models.domain.subject_domain import DeliveryRequest, EventKind
from app.repositories.subject_repository import SubjectRepository
from app.services.fire_once_ledger import FireOnceLedger
from app.services.intent_token_service import IntentTokenStore
from app.services.redis_client import fast_redis
from app.services.state_classifier import (
    LookupMailLevelResolver,
    MailLevelResolver,
    event_still_applies,
    too_new,
)
from app.services.task_queue import RedisTaskQueue, decode_envelope
from app.services.webhook_client import UnsubWebhookClient, WebhookDeliveryError, build_payload

logger = get_logger(__name__)

TASK_NAME = "unsub_update_postback"
RESERVE_TIMEOUT_SECONDS = 5
ERROR_BACKOFF_SECONDS = 5


class DeliveryOutcome(StrEnum):
    DELIVERED = "delivered"
    DISABLED = "disabled"
    SKIPPED_UNKNOWN_EVENT = "skipped_unknown_event"
    SKIPPED_SUBJECT = "skipped_subject"
    SKIPPED_STATE = "skipped_state"
    SKIPPED_SUPERSEDED = "skipped_superseded"
    SKIPPED_TOO_NEW = "skipped_too_new"
    SKIPPED_ALREADY_DELIVERED = "skipped_already_delivered"
    FAILED = "failed"
    ERROR = "error"


class UnsubPostbackJob:
    def __init__(
        self,
        repository=SubjectRepository,
        tokens: IntentTokenStore | None = None,
        ledger: FireOnceLedger | None = None,
        client: UnsubWebhookClient | None = None,
        resolver: MailLevelResolver | None = None,
    ):
        self.repository = repository
        self.tokens = tokens or IntentTokenStore()
        self.ledger = ledger or FireOnceLedger()
        self.client = client or UnsubWebhookClient()
        self.resolver = resolver or LookupMailLevelResolver(settings.EMAIL_LEVELS)

    async def execute(self, request: DeliveryRequest) -> DeliveryOutcome:
        try:
            return await self._execute(request)
        except Exception as e:
            logger.error(
                "Postback task crashed",
                user_id=request.user_id,
                postback_event=request.event,
                error=str(e),
                error_type=type(e).__name__,
            )
            return DeliveryOutcome.ERROR

    async def _execute(self, request: DeliveryRequest) -> DeliveryOutcome:
        if not settings.UNSUB_UPDATE_ENABLED:
            return DeliveryOutcome.DISABLED

        event = EventKind.parse(request.event)
        if event is None:
            logger.warning(
                "Unknown postback event", user_id=request.user_id, postback_event=request.event
            )
            return DeliveryOutcome.SKIPPED_UNKNOWN_EVENT

        user_id = request.user_id
        subject = await self.repository.get_subject(user_id)
        if subject is None or not subject.processable:
            logger.info(
                "SKIP (user gone, staged or suspended)", user_id=user_id, postback_event=event
            )
            return DeliveryOutcome.SKIPPED_SUBJECT

        snapshot = await self.repository.get_preferences(user_id)
        if snapshot is None or not event_still_applies(event, snapshot, self.resolver):
            logger.info(
                "SKIP (preference changed since enqueue)", user_id=user_id, postback_event=event
            )
            return DeliveryOutcome.SKIPPED_STATE

        token = request.pending_token
        if token and not await self.tokens.is_current(user_id, token):
            logger.info(
                "SKIP (superseded by newer intent)",
                user_id=user_id,
                postback_event=event,
                pending_token=token,
            )
            return DeliveryOutcome.SKIPPED_SUPERSEDED

        if too_new(subject, settings.UNSUB_UPDATE_MIN_MINUTES_SINCE_REGISTRATION):
            logger.info("SKIP (too new)", user_id=user_id, postback_event=event)
            return DeliveryOutcome.SKIPPED_TOO_NEW

        if await self.ledger.already_delivered(event, user_id):
            logger.info("SKIP (already delivered)", user_id=user_id, postback_event=event)
            return DeliveryOutcome.SKIPPED_ALREADY_DELIVERED

        payload = build_payload(
            event,
            subject,
            snapshot,
            source=request.source,
            pending_token=request.pending_token,
        )

        start = time.time()
        try:
            status_code = await self.client.post(payload)
        except WebhookDeliveryError as e:
            log_postback_result(
                user_id,
                event,
                ok=False,
                status_code=e.status_code,
                duration_ms=round((time.time() - start) * 1000, 1),
                error=str(e),
                body_excerpt=e.body_excerpt,
            )
            return DeliveryOutcome.FAILED

        log_postback_result(
            user_id,
            event,
            ok=True,
            status_code=status_code,
            duration_ms=round((time.time() - start) * 1000, 1),
        )

        await self.ledger.mark_delivered(event, user_id)
        if settings.UNSUB_UPDATE_RECORD_LAST_SENT:
            await self.tokens.record_last_sent(user_id)

        return DeliveryOutcome.DELIVERED


async def run_postback_task(payload: dict, job: UnsubPostbackJob) -> DeliveryOutcome:
    """Queue handler: validate the raw payload and run the task."""
    try:
        request = DeliveryRequest.model_validate(payload)
    except ValueError as e:
        logger.warning("Malformed postback payload", error=str(e))
        return DeliveryOutcome.ERROR

    return await job.execute(request)


class PostbackQueueConsumer:
    """Pulls envelopes off the task queue and routes them to the postback task."""

    def __init__(self, queue: RedisTaskQueue, job: UnsubPostbackJob):
        self.queue = queue
        self.job = job
        self.outcomes: Counter[str] = Counter()

    async def run_once(self, timeout: int = RESERVE_TIMEOUT_SECONDS) -> DeliveryOutcome | None:
        """
        Process at most one envelope.

        Returns:
            The task outcome, or None when the queue was empty
        """
        raw = await self.queue.reserve(timeout=timeout)
        if raw is None:
            return None

        try:
            task_name, payload = decode_envelope(raw)
            if task_name != TASK_NAME:
                logger.warning("Dropping task with unknown name", task=task_name)
                outcome = DeliveryOutcome.ERROR
            else:
                outcome = await run_postback_task(payload, self.job)
        except ValueError as e:
            logger.warning("Dropping malformed task envelope", error=str(e), raw=raw[:200])
            outcome = DeliveryOutcome.ERROR
        finally:
            # Acked whatever happened: the task has already decided not to retry
            await self.queue.ack(raw)

        self.outcomes[outcome] += 1
        return outcome

    async def run_forever(self, backoff_seconds: float = ERROR_BACKOFF_SECONDS) -> None:
        """Process envelopes until cancelled, backing off after any failed pass."""
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(
                    "Error in unsub postback worker loop",
                    error=str(e),
                    error_type=type(e).__name__,
                    backoff_seconds=backoff_seconds,
                )
                await asyncio.sleep(backoff_seconds)


async def start_unsub_postback_worker() -> None:
    """Consume the postback queue until cancelled."""
    await db_pool.initialize()
    await fast_redis.initialize()

    job = UnsubPostbackJob()
    queue = RedisTaskQueue()
    consumer = PostbackQueueConsumer(queue, job)
    logger.info(
        "Starting unsub postback worker",
        fire_once=settings.UNSUB_UPDATE_FIRE_ONCE_ENABLED,
        min_minutes_since_registration=settings.UNSUB_UPDATE_MIN_MINUTES_SINCE_REGISTRATION,
    )

    try:
        await queue.recover_inflight()
        await consumer.run_forever()
    finally:
        logger.info("Unsub postback worker stopping", outcomes=dict(consumer.outcomes))
        await job.client.close()
        await fast_redis.close()
        await db_pool.close()
