"""
Change feed for host preference updates, and the one write the bridge makes.

The feed is the extension point the host publishes to (directly in-process or
through the /hooks routes). Subscribers receive the notification together with
the reaction scope of the unit of work that produced it.
"""

from collections.abc import Awaitable, Callable

from app.infrastructure.observability.logging import get_logger
from app.models.domain.subject_domain import DIGEST_FIELDS, ChangeNotification, PreferenceSnapshot
from app.repositories.subject_repository import SubjectRepository
from app.services.recursion_guard import ReactionScope

logger = get_logger(__name__)

ChangeHandler = Callable[[ChangeNotification, ReactionScope], Awaitable[None]]

COERCION_SOURCE = "force_digest_never"


class PreferenceChangeFeed:
    def __init__(self):
        self._handlers: list[ChangeHandler] = []

    def subscribe(self, handler: ChangeHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: ChangeHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish(
        self, notification: ChangeNotification, scope: ReactionScope | None = None
    ) -> None:
        """Deliver to every handler in order; one failing handler does not stop the rest."""
        scope = scope or ReactionScope()
        for handler in list(self._handlers):
            try:
                await handler(notification, scope)
            except Exception as e:
                logger.error(
                    "Preference change handler failed",
                    user_id=notification.subject_id,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                    error_type=type(e).__name__,
                )


class PreferenceService:
    """Applies derived preference changes and reports them on the feed."""

    def __init__(self, feed: PreferenceChangeFeed, repository=SubjectRepository):
        self.feed = feed
        self.repository = repository

    async def force_digest_never(self, user_id: int, scope: ReactionScope) -> bool:
        """
        Force the digest off and publish the change under the caller's scope.

        Returns:
            bool: True if the host record was updated
        """
        updated = await self.repository.force_digest_never(user_id)
        if not updated:
            logger.warning("Digest coercion matched no preference row", user_id=user_id)
            return False

        snapshot = await self.repository.get_preferences(user_id)
        if snapshot is None:
            snapshot = PreferenceSnapshot(email_digests=False, digest_after_minutes=0)

        await self.feed.publish(
            ChangeNotification(
                subject_id=user_id,
                changed_fields=DIGEST_FIELDS,
                snapshot=snapshot,
                source=COERCION_SOURCE,
            ),
            scope,
        )
        return True


# Process-wide feed the dispatcher subscribes to at startup
preference_feed = PreferenceChangeFeed()
