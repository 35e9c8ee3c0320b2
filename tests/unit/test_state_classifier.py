from datetime import UTC, datetime, timedelta

import pytest

from app.models.domain.subject_domain import EventKind, PreferenceSnapshot, Subject
from app.services.state_classifier import (
    LookupMailLevelResolver,
    all_mail_off,
    digest_never,
    event_still_applies,
    too_new,
)

RESOLVER = LookupMailLevelResolver({"always": 0, "only_when_away": 1, "never": 2})


@pytest.mark.parametrize(
    "email_digests, minutes, expected",
    [
        (True, 30, False),
        (True, 1440, False),
        (False, 30, True),
        (True, 0, True),
        (True, -5, True),
        (None, 60, False),
        (None, None, True),
        (False, 0, True),
    ],
)
def test_digest_never(email_digests, minutes, expected):
    snapshot = PreferenceSnapshot(email_digests=email_digests, digest_after_minutes=minutes)
    assert digest_never(snapshot) is expected


def test_digest_never_without_snapshot():
    assert digest_never(None) is False


def test_all_mail_off_uses_resolved_ordinal():
    assert all_mail_off(PreferenceSnapshot(email_level=2), RESOLVER) is True
    assert all_mail_off(PreferenceSnapshot(email_level=0), RESOLVER) is False
    assert all_mail_off(PreferenceSnapshot(email_level=None), RESOLVER) is False


def test_all_mail_off_follows_host_encoding():
    """A host that stores "never" as 3 is honoured without code changes."""
    resolver = LookupMailLevelResolver({"always": 0, "never": 3})
    assert all_mail_off(PreferenceSnapshot(email_level=3), resolver) is True
    assert all_mail_off(PreferenceSnapshot(email_level=2), resolver) is False


def test_all_mail_off_without_never_entry_is_false():
    resolver = LookupMailLevelResolver({"always": 0})
    assert all_mail_off(PreferenceSnapshot(email_level=2), resolver) is False


def test_all_mail_off_fails_closed_when_resolver_raises():
    class BrokenResolver:
        def is_never(self, level):
            raise RuntimeError("enum lookup unsupported")

    assert all_mail_off(PreferenceSnapshot(email_level=2), BrokenResolver()) is False


def test_resolver_accepts_level_names():
    assert RESOLVER.is_never("never") is True
    assert RESOLVER.is_never("2") is True
    assert RESOLVER.is_never("always") is False


def test_too_new_boundary():
    now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    exactly = Subject(id=1, created_at=now - timedelta(minutes=10))
    just_under = Subject(id=1, created_at=now - timedelta(minutes=9, seconds=59))

    assert too_new(exactly, 10, now=now) is False
    assert too_new(just_under, 10, now=now) is True


def test_too_new_unknown_registration_date():
    assert too_new(Subject(id=1, created_at=None), 10) is False


def test_too_new_naive_timestamp_treated_as_utc():
    now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    subject = Subject(id=1, created_at=datetime(2024, 5, 1, 11, 55))
    assert too_new(subject, 10, now=now) is True


def test_event_still_applies():
    never = PreferenceSnapshot(email_digests=False, digest_after_minutes=0, email_level=2)
    active = PreferenceSnapshot(email_digests=True, digest_after_minutes=30, email_level=0)

    assert event_still_applies(EventKind.DIGEST_SET_TO_NEVER, never, RESOLVER) is True
    assert event_still_applies("email_level_set_to_never", never, RESOLVER) is True
    assert event_still_applies(EventKind.DIGEST_SET_TO_NEVER, active, RESOLVER) is False
    assert event_still_applies("account_deleted", never, RESOLVER) is False
