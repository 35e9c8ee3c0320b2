"""
Pure predicates over a user's mail preferences.

Nothing here does I/O; callers read the snapshot and subject themselves.
"""

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Protocol

from app.infrastructure.observability.logging import get_logger
from app.models.domain.subject_domain import EventKind, PreferenceSnapshot, Subject

logger = get_logger(__name__)


class MailLevelResolver(Protocol):
    """Knows how the host encodes its email_level values."""

    def is_never(self, level: int | str | None) -> bool: ...


class LookupMailLevelResolver:
    """
    Resolve the host's "never" email level from a name -> ordinal mapping.

    The mapping comes from configuration so the host can change its encoding
    without touching the bridge. Without a "never" entry nothing matches.
    """

    NEVER = "never"

    def __init__(self, levels: Mapping[str, int]):
        self._levels = dict(levels)

    @property
    def never_ordinal(self) -> int | None:
        return self._levels.get(self.NEVER)

    def is_never(self, level: int | str | None) -> bool:
        if level is None:
            return False
        ordinal = self.never_ordinal
        if ordinal is None:
            return False
        try:
            if isinstance(level, str) and not level.strip().lstrip("-").isdigit():
                return level.strip().lower() == self.NEVER
            return int(level) == int(ordinal)
        except (TypeError, ValueError):
            return False


def digest_never(snapshot: PreferenceSnapshot | None) -> bool:
    """Digest is off: either disabled outright or the interval is zero/negative."""
    if snapshot is None:
        return False
    return snapshot.email_digests is False or int(snapshot.digest_after_minutes or 0) <= 0


def all_mail_off(snapshot: PreferenceSnapshot | None, resolver: MailLevelResolver) -> bool:
    """email_level is the host's "never" value. Resolver failures count as False."""
    if snapshot is None:
        return False
    try:
        return bool(resolver.is_never(snapshot.email_level))
    except Exception as e:
        logger.warning("Email level lookup failed", error=str(e), error_type=type(e).__name__)
        return False


def too_new(subject: Subject, min_age_minutes: int, now: datetime | None = None) -> bool:
    """Account registered less than ``min_age_minutes`` ago."""
    if subject.created_at is None:
        return False

    created_at = subject.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)

    now = now or datetime.now(UTC)
    return now - created_at < timedelta(minutes=int(min_age_minutes))


def event_still_applies(
    event: EventKind | str, snapshot: PreferenceSnapshot | None, resolver: MailLevelResolver
) -> bool:
    """Re-check the predicate behind an event kind; unknown kinds never apply."""
    kind = EventKind.parse(event)
    if kind is EventKind.DIGEST_SET_TO_NEVER:
        return digest_never(snapshot)
    if kind is EventKind.EMAIL_LEVEL_SET_TO_NEVER:
        return all_mail_off(snapshot, resolver)
    return False
