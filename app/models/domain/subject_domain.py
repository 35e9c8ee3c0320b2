from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

# Preference fields the host reports in change notifications
FIELD_EMAIL_DIGESTS = "email_digests"
FIELD_DIGEST_AFTER_MINUTES = "digest_after_minutes"
FIELD_EMAIL_LEVEL = "email_level"

DIGEST_FIELDS = frozenset({FIELD_EMAIL_DIGESTS, FIELD_DIGEST_AFTER_MINUTES})
ALL_PREFERENCE_FIELDS = DIGEST_FIELDS | {FIELD_EMAIL_LEVEL}


class EventKind(StrEnum):
    """Events relayed to the postback endpoint."""

    DIGEST_SET_TO_NEVER = "digest_set_to_never"
    EMAIL_LEVEL_SET_TO_NEVER = "email_level_set_to_never"

    @classmethod
    def parse(cls, value: str | None) -> "EventKind | None":
        """Return the matching kind, or None for anything unknown."""
        try:
            return cls(value)
        except ValueError:
            return None


class Subject(BaseModel):
    """Host user account as seen by the bridge."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str = ""
    email: str = ""
    created_at: datetime | None = None
    staged: bool = False
    suspended: bool = False

    @property
    def processable(self) -> bool:
        return not (self.staged or self.suspended)


class PreferenceSnapshot(BaseModel):
    """Point-in-time read of a user's mail preferences."""

    model_config = ConfigDict(frozen=True)

    email_digests: bool | None = None
    digest_after_minutes: int | None = None
    email_level: int | None = None


class ChangeNotification(BaseModel):
    """
    A preference update reported by the host.

    Controller-driven flows have no field diff; they report every field as
    changed and leave ``snapshot`` empty so the current state is re-read.
    """

    model_config = ConfigDict(frozen=True)

    subject_id: int
    changed_fields: frozenset[str] = ALL_PREFERENCE_FIELDS
    snapshot: PreferenceSnapshot | None = None
    source: str = "user_option_commit"

    @property
    def digest_changed(self) -> bool:
        return bool(self.changed_fields & DIGEST_FIELDS)

    @property
    def email_level_changed(self) -> bool:
        return FIELD_EMAIL_LEVEL in self.changed_fields


class DeliveryRequest(BaseModel):
    """Payload of a queued postback task."""

    user_id: int
    event: str
    pending_token: str | None = None
    source: str = ""
