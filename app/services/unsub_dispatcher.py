"""
Reaction to mail preference changes.

Runs on the caller's request path: it only classifies and queues work, the
POST happens later in the postback task. Nothing raised in here ever reaches
the caller.
"""

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.jobs.unsub_postback_job import TASK_NAME
from app.models.domain.subject_domain import (
    ALL_PREFERENCE_FIELDS,
    ChangeNotification,
    DeliveryRequest,
    EventKind,
    PreferenceSnapshot,
)
from app.repositories.subject_repository import SubjectRepository
from app.services.intent_token_service import IntentTokenStore
from app.services.preference_service import PreferenceService, preference_feed
from app.services.recursion_guard import ReactionScope
from app.services.state_classifier import (
    LookupMailLevelResolver,
    MailLevelResolver,
    all_mail_off,
    digest_never,
    too_new,
)
from app.services.task_queue import RedisTaskQueue

logger = get_logger(__name__)

SOURCE_UNSUBSCRIBE = "unsubscribe_controller"
SOURCE_PREFERENCES = "preferences_controller"


class UnsubUpdateDispatcher:
    def __init__(
        self,
        repository=SubjectRepository,
        tokens: IntentTokenStore | None = None,
        queue: RedisTaskQueue | None = None,
        preferences: PreferenceService | None = None,
        resolver: MailLevelResolver | None = None,
    ):
        self.repository = repository
        self.tokens = tokens or IntentTokenStore()
        self.queue = queue or RedisTaskQueue()
        self.preferences = preferences or PreferenceService(preference_feed, repository)
        self.resolver = resolver or LookupMailLevelResolver(settings.EMAIL_LEVELS)

    async def react(
        self, notification: ChangeNotification, scope: ReactionScope | None = None
    ) -> list[EventKind]:
        """
        Handle one change notification.

        Returns:
            list[EventKind]: Events queued for delivery, empty when nothing fired.
                Events queued before a failure are still reported.
        """
        scope = scope or ReactionScope()
        if scope.guarded():
            logger.debug(
                "Ignoring change raised by our own coercion",
                user_id=notification.subject_id,
                source=notification.source,
            )
            return []

        queued: list[EventKind] = []
        try:
            await self._react(notification, scope, queued)
        except Exception as e:
            logger.error(
                "Unsub update reaction failed",
                user_id=notification.subject_id,
                source=notification.source,
                error=str(e),
                error_type=type(e).__name__,
                queued=[str(event) for event in queued],
            )
        return queued

    async def _react(
        self, notification: ChangeNotification, scope: ReactionScope, queued: list[EventKind]
    ) -> None:
        if not settings.UNSUB_UPDATE_ENABLED:
            return

        user_id = notification.subject_id
        subject = await self.repository.get_subject(user_id)
        if subject is None or not subject.processable:
            logger.info("SKIP (user gone, staged or suspended)", user_id=user_id)
            return

        if too_new(subject, settings.UNSUB_UPDATE_MIN_MINUTES_SINCE_REGISTRATION):
            logger.warning("SKIP (too new)", user_id=user_id, source=notification.source)
            return

        snapshot = await self._resolve_snapshot(notification)
        if snapshot is None:
            logger.info("SKIP (no preference record)", user_id=user_id)
            return

        digest_changed = notification.digest_changed

        with scope.enter():
            if notification.email_level_changed and all_mail_off(snapshot, self.resolver):
                force = settings.UNSUB_UPDATE_FORCE_DIGEST_NEVER_ON_NO_MAIL
                if force and not digest_never(snapshot):
                    if await self.preferences.force_digest_never(user_id, scope):
                        snapshot = snapshot.model_copy(
                            update={"email_digests": False, "digest_after_minutes": 0}
                        )
                        digest_changed = True

                if settings.UNSUB_UPDATE_POSTBACK_ON_EMAIL_LEVEL_NEVER:
                    await self._enqueue(
                        user_id, EventKind.EMAIL_LEVEL_SET_TO_NEVER, notification.source
                    )
                    queued.append(EventKind.EMAIL_LEVEL_SET_TO_NEVER)

            if (
                digest_changed
                and digest_never(snapshot)
                and settings.UNSUB_UPDATE_POSTBACK_ON_DIGEST_NEVER
            ):
                await self._enqueue_digest(user_id, notification.source)
                queued.append(EventKind.DIGEST_SET_TO_NEVER)

        if queued:
            self._log_enqueued(user_id, snapshot, queued, notification.source)

    async def _resolve_snapshot(
        self, notification: ChangeNotification
    ) -> PreferenceSnapshot | None:
        """
        The notification's snapshot, completed from the stored row.

        Hosts may report only the fields that changed; fields they left out are
        taken from the current preference record rather than read as unset.
        """
        reported = notification.snapshot
        if reported is not None and reported.model_fields_set >= ALL_PREFERENCE_FIELDS:
            return reported

        stored = await self.repository.get_preferences(notification.subject_id)
        if reported is None:
            return stored
        if stored is None:
            return reported
        return stored.model_copy(update=reported.model_dump(include=reported.model_fields_set))

    async def _enqueue_digest(self, user_id: int, source: str) -> None:
        """Mint a token and queue the digest postback carrying it."""
        previous = await self.tokens.current(user_id)
        token = await self.tokens.mint_and_store(user_id)
        try:
            await self._enqueue(user_id, EventKind.DIGEST_SET_TO_NEVER, source, token=token)
        except Exception:
            # The new task never reached the queue; give currency back to the old one
            restored = await self.tokens.restore(user_id, previous, token)
            logger.error(
                "Digest postback not queued",
                user_id=user_id,
                token=token,
                restored_token=previous if restored else None,
            )
            raise

    async def _enqueue(
        self, user_id: int, event: EventKind, source: str, token: str | None = None
    ) -> None:
        request = DeliveryRequest(user_id=user_id, event=event, pending_token=token, source=source)
        await self.queue.enqueue(TASK_NAME, request.model_dump(mode="json"))

    def _log_enqueued(
        self, user_id: int, snapshot: PreferenceSnapshot, queued: list[EventKind], source: str
    ) -> None:
        logger.warning(
            "ENQUEUE",
            user_id=user_id,
            events=[str(event) for event in queued],
            email_digests=snapshot.email_digests,
            digest_after_minutes=snapshot.digest_after_minutes,
            email_level=snapshot.email_level,
            source=source,
        )

    # Controller-driven flows carry no field diff: re-read state and let the
    # token store and ledger absorb repeats.

    async def on_unsubscribe_submitted(
        self, unsubscribe_key: str, http_method: str = "POST"
    ) -> list[EventKind]:
        if not self._accepts_method(http_method):
            return []

        try:
            user_id = await self.repository.resolve_unsubscribe_key(unsubscribe_key)
        except Exception as e:
            logger.error("Unsubscribe key lookup failed", error=str(e), error_type=type(e).__name__)
            return []

        if user_id is None:
            logger.info("SKIP (unknown unsubscribe key)")
            return []

        return await self.react(ChangeNotification(subject_id=user_id, source=SOURCE_UNSUBSCRIBE))

    async def on_preferences_saved(
        self, user_id: int, http_method: str = "POST"
    ) -> list[EventKind]:
        if not self._accepts_method(http_method):
            return []
        return await self.react(ChangeNotification(subject_id=user_id, source=SOURCE_PREFERENCES))

    def _accepts_method(self, http_method: str) -> bool:
        if settings.UNSUB_UPDATE_HOOK_ONLY_ON_POST and (http_method or "").upper() != "POST":
            logger.debug("Ignoring non-POST controller hook", http_method=http_method)
            return False
        return True


_dispatcher: UnsubUpdateDispatcher | None = None


def get_dispatcher() -> UnsubUpdateDispatcher:
    """Process-wide dispatcher, subscribed to the preference feed on first use."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = UnsubUpdateDispatcher()
        preference_feed.subscribe(_dispatcher.react)
    return _dispatcher
