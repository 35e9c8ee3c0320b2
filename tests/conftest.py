from datetime import UTC, datetime, timedelta

import pytest

from app.models.domain.subject_domain import PreferenceSnapshot, Subject
from app.services.fire_once_ledger import FireOnceLedger
from app.services.intent_token_service import IntentTokenStore
from app.services.preference_service import PreferenceChangeFeed, PreferenceService
from app.services.task_queue import RedisTaskQueue
from app.services.unsub_dispatcher import UnsubUpdateDispatcher


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return key in self.store

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        items = self.lists.setdefault(key, [])
        if left:
            items.insert(0, value)
        else:
            items.append(value)
        return True

    async def pop_to_inflight(
        self, source_key: str, inflight_key: str, timeout: int = 0
    ) -> str | None:
        items = self.lists.get(source_key)
        if not items:
            return None
        value = items.pop()
        self.lists.setdefault(inflight_key, []).insert(0, value)
        return value

    async def requeue_inflight(self, inflight_key: str, queue_key: str) -> int:
        items = self.lists.get(inflight_key, [])
        moved = 0
        while items:
            self.lists.setdefault(queue_key, []).insert(0, items.pop())
            moved += 1
        return moved

    async def ack_from_inflight(self, inflight_key: str, value: str) -> bool:
        items = self.lists.get(inflight_key, [])
        if value in items:
            items.remove(value)
            return True
        return False


class FakeSubjectRepository:
    """In-memory stand-in for the host users / user_options tables."""

    def __init__(self):
        self.subjects: dict[int, Subject] = {}
        self.preferences: dict[int, PreferenceSnapshot] = {}
        self.unsubscribe_keys: dict[str, int] = {}
        self.force_calls: list[int] = []

    def add(
        self,
        user_id: int = 42,
        *,
        created_minutes_ago: float | None = 30,
        staged: bool = False,
        suspended: bool = False,
        email_digests: bool | None = True,
        digest_after_minutes: int | None = 1440,
        email_level: int | None = 0,
    ) -> Subject:
        created_at = None
        if created_minutes_ago is not None:
            created_at = datetime.now(UTC) - timedelta(minutes=created_minutes_ago)
        subject = Subject(
            id=user_id,
            username=f"user{user_id}",
            email=f"user{user_id}@example.com",
            created_at=created_at,
            staged=staged,
            suspended=suspended,
        )
        self.subjects[user_id] = subject
        self.preferences[user_id] = PreferenceSnapshot(
            email_digests=email_digests,
            digest_after_minutes=digest_after_minutes,
            email_level=email_level,
        )
        return subject

    def update_preferences(self, user_id: int, **changes) -> PreferenceSnapshot:
        snapshot = self.preferences[user_id].model_copy(update=changes)
        self.preferences[user_id] = snapshot
        return snapshot

    async def get_subject(self, user_id: int) -> Subject | None:
        return self.subjects.get(user_id)

    async def get_preferences(self, user_id: int) -> PreferenceSnapshot | None:
        return self.preferences.get(user_id)

    async def resolve_unsubscribe_key(self, key: str) -> int | None:
        return self.unsubscribe_keys.get(key)

    async def force_digest_never(self, user_id: int) -> bool:
        self.force_calls.append(user_id)
        if user_id not in self.preferences:
            return False
        self.update_preferences(user_id, email_digests=False, digest_after_minutes=0)
        return True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_repository():
    return FakeSubjectRepository()


@pytest.fixture
def token_store(fake_redis):
    return IntentTokenStore(redis=fake_redis)


@pytest.fixture
def ledger(fake_redis):
    return FireOnceLedger(redis=fake_redis, enabled=True)


@pytest.fixture
def task_queue(fake_redis):
    return RedisTaskQueue(redis=fake_redis)


@pytest.fixture
def change_feed():
    return PreferenceChangeFeed()


@pytest.fixture
def dispatcher(fake_repository, token_store, task_queue, change_feed):
    dispatcher = UnsubUpdateDispatcher(
        repository=fake_repository,
        tokens=token_store,
        queue=task_queue,
        preferences=PreferenceService(change_feed, fake_repository),
    )
    change_feed.subscribe(dispatcher.react)
    return dispatcher
