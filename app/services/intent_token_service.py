"""
Intent token store for pending digest postbacks.

Every dispatch mints a fresh token and stores it as the user's current one.
A queued postback only fires if the token it carries is still current, so a
never -> daily -> never flip leaves exactly one task able to deliver.
"""

import secrets
import time
from datetime import UTC, datetime

from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

TOKEN_KEY_PREFIX = "unsub_update:pending_token"
LAST_SENT_KEY_PREFIX = "unsub_update:last_sent_at"
TOKEN_RANDOM_BYTES = 8


class IntentTokenError(Exception):
    """Raised when a freshly minted token could not be stored."""

    def __init__(self, message: str, user_id: int | None = None):
        super().__init__(message)
        self.user_id = user_id


def new_token(now: float | None = None) -> str:
    """``{unix_timestamp}-{random_hex}``"""
    timestamp = int(now if now is not None else time.time())
    return f"{timestamp}-{secrets.token_hex(TOKEN_RANDOM_BYTES)}"


class IntentTokenStore:
    """Per-user markers written by the bridge: the pending token and the last send."""

    def __init__(self, redis=None):
        self.redis = redis or fast_redis

    def _token_key(self, user_id: int) -> str:
        return f"{TOKEN_KEY_PREFIX}:{user_id}"

    def _last_sent_key(self, user_id: int) -> str:
        return f"{LAST_SENT_KEY_PREFIX}:{user_id}"

    async def mint_and_store(self, user_id: int) -> str:
        """
        Mint a token and make it the user's current intent.

        Concurrent writers are not coordinated: the last write wins.

        Raises:
            IntentTokenError: If the token could not be persisted
        """
        token = new_token()
        stored = await self.redis.set_with_ttl(self._token_key(user_id), token)
        if not stored:
            raise IntentTokenError("Failed to store pending token", user_id=user_id)

        logger.debug("Pending token minted", user_id=user_id, token=token)
        return token

    async def current(self, user_id: int) -> str | None:
        try:
            return await self.redis.get(self._token_key(user_id))
        except Exception as e:
            logger.error("Failed to read pending token", user_id=user_id, error=str(e))
            return None

    async def is_current(self, user_id: int, token: str) -> bool:
        """A read failure counts as superseded."""
        if not token:
            return False
        return await self.current(user_id) == token

    async def restore(self, user_id: int, previous: str | None, minted: str) -> bool:
        """
        Make ``previous`` current again if ``minted`` is still the current token.

        Used when the task carrying ``minted`` could not be queued. A newer mint
        in the meantime wins. Not atomic: a mint racing this call may be undone.

        Returns:
            bool: True if ``previous`` was put back
        """
        if not previous or not await self.is_current(user_id, minted):
            return False
        try:
            restored = await self.redis.set_with_ttl(self._token_key(user_id), previous)
        except Exception as e:
            logger.error("Failed to restore pending token", user_id=user_id, error=str(e))
            return False

        if restored:
            logger.info("Pending token restored", user_id=user_id, token=previous)
        return bool(restored)

    async def record_last_sent(self, user_id: int, sent_at: datetime | None = None) -> None:
        sent_at = sent_at or datetime.now(UTC)
        try:
            stored = await self.redis.set_with_ttl(
                self._last_sent_key(user_id), sent_at.isoformat()
            )
            if not stored:
                logger.warning("Failed to record last postback time", user_id=user_id)
        except Exception as e:
            logger.warning("Failed to record last postback time", user_id=user_id, error=str(e))

    async def last_sent(self, user_id: int) -> str | None:
        try:
            return await self.redis.get(self._last_sent_key(user_id))
        except Exception as e:
            logger.error("Failed to read last postback time", user_id=user_id, error=str(e))
            return None
