"""
Read access to the host forum's users and mail preferences.

The host owns these tables; the only write the bridge ever makes is the
digest coercion in ``force_digest_never``.
"""

from datetime import UTC, datetime

from app.db.helpers import DatabaseError, execute_query, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.subject_domain import PreferenceSnapshot, Subject

logger = get_logger(__name__)


class SubjectRepositoryError(DatabaseError):
    """More specific exception for repository failures."""


class SubjectRepository:
    """Queries against users / user_emails / user_options / unsubscribe_keys."""

    @classmethod
    def _row_to_subject(cls, row: dict | None) -> Subject | None:
        if not row:
            return None

        suspended_till = row.get("suspended_till")
        if suspended_till is not None and suspended_till.tzinfo is None:
            suspended_till = suspended_till.replace(tzinfo=UTC)

        return Subject(
            id=int(row["id"]),
            username=row.get("username") or "",
            email=row.get("email") or "",
            created_at=row.get("created_at"),
            staged=bool(row.get("staged")),
            suspended=suspended_till is not None and suspended_till > datetime.now(UTC),
        )

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def get_subject(cls, user_id: int) -> Subject | None:
        query = """
            SELECT u.id, u.username, u.created_at, u.staged, u.suspended_till,
                   ue.email
            FROM users u
            LEFT JOIN user_emails ue ON ue.user_id = u.id AND ue."primary" = true
            WHERE u.id = %s
        """
        row = await fetch_one(query, (user_id,))
        return cls._row_to_subject(row)

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def get_preferences(cls, user_id: int) -> PreferenceSnapshot | None:
        query = """
            SELECT email_digests, digest_after_minutes, email_level
            FROM user_options
            WHERE user_id = %s
        """
        row = await fetch_one(query, (user_id,))
        if not row:
            return None

        return PreferenceSnapshot(
            email_digests=row.get("email_digests"),
            digest_after_minutes=row.get("digest_after_minutes"),
            email_level=row.get("email_level"),
        )

    @classmethod
    async def resolve_unsubscribe_key(cls, key: str) -> int | None:
        """Map an unsubscribe link key to its user id."""
        if not key:
            return None

        row = await fetch_one("SELECT user_id FROM unsubscribe_keys WHERE key = %s", (key,))
        if not row or row.get("user_id") is None:
            return None
        return int(row["user_id"])

    @classmethod
    async def force_digest_never(cls, user_id: int) -> bool:
        """
        Turn the digest off directly, skipping host-side validation.

        Returns:
            bool: True if a user_options row was updated
        """
        query = """
            UPDATE user_options
            SET email_digests = false, digest_after_minutes = 0
            WHERE user_id = %s
        """
        try:
            affected = await execute_query(query, (user_id,))
        except DatabaseError as e:
            raise SubjectRepositoryError(
                f"Failed to force digest off: {e}", operation="force_digest_never"
            ) from e

        logger.info("Digest forced to never", user_id=user_id, rows=affected)
        return affected > 0
