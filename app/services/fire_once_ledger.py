"""
Fire-once ledger: remembers which (event, user) pairs were already delivered.

Entries are written only after a 2xx and are never removed. Storage trouble
never blocks a delivery: an unreadable ledger counts as "not delivered yet",
and a failed write is only logged. The worst case is one duplicate POST.
"""

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

LEDGER_KEY_PREFIX = "unsub_update:fired"


class FireOnceLedger:
    def __init__(self, redis=None, enabled: bool | None = None):
        self.redis = redis or fast_redis
        self.enabled = settings.UNSUB_UPDATE_FIRE_ONCE_ENABLED if enabled is None else enabled

    def _key(self, event: str, user_id: int) -> str:
        return f"{LEDGER_KEY_PREFIX}:{event}:{user_id}"

    async def already_delivered(self, event: str, user_id: int) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(await self.redis.exists(self._key(event, user_id)))
        except Exception as e:
            logger.warning(
                "Fire-once ledger read failed, treating as not delivered",
                user_id=user_id,
                postback_event=event,
                error=str(e),
            )
            return False

    async def mark_delivered(self, event: str, user_id: int) -> None:
        if not self.enabled:
            return
        try:
            stored = await self.redis.set_with_ttl(self._key(event, user_id), "1")
        except Exception as e:
            logger.error(
                "Fire-once ledger write failed", user_id=user_id, postback_event=event, error=str(e)
            )
            return

        if not stored:
            logger.error("Fire-once ledger write failed", user_id=user_id, postback_event=event)
