import hashlib
import hmac
import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import settings
from app.routes import hooks
from app.services.unsub_dispatcher import get_dispatcher


def _make_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def client(dispatcher):
    app = FastAPI()
    app.include_router(hooks.router)
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    return TestClient(app)


def test_user_options_hook_queues_digest_postback(monkeypatch, client, fake_repository):
    monkeypatch.setattr(settings, "UNSUB_UPDATE_HOOK_SECRET", None)
    fake_repository.add(42, email_digests=False)

    response = client.post(
        "/hooks/user-options",
        json={"subject_id": 42, "changed_fields": ["email_digests"]},
    )

    assert response.status_code == 202
    assert response.json() == {"ok": True, "queued": ["digest_set_to_never"]}


def test_user_options_hook_with_no_change_still_accepted(monkeypatch, client, fake_repository):
    monkeypatch.setattr(settings, "UNSUB_UPDATE_HOOK_SECRET", None)
    fake_repository.add(42, email_digests=True, digest_after_minutes=1440)

    response = client.post("/hooks/user-options", json={"subject_id": 42})

    assert response.status_code == 202
    assert response.json()["queued"] == []


def test_unsubscribe_hook_resolves_key(monkeypatch, client, fake_repository, task_queue):
    monkeypatch.setattr(settings, "UNSUB_UPDATE_HOOK_SECRET", None)
    fake_repository.add(42, digest_after_minutes=0)
    fake_repository.unsubscribe_keys["k-1"] = 42

    response = client.post("/hooks/unsubscribe", json={"key": "k-1"})

    assert response.status_code == 202
    assert response.json()["queued"] == ["digest_set_to_never"]
    assert len(task_queue.redis.lists[task_queue.queue_key]) == 1


def test_preferences_hook_ignores_get(monkeypatch, client, fake_repository):
    monkeypatch.setattr(settings, "UNSUB_UPDATE_HOOK_SECRET", None)
    fake_repository.add(42, email_digests=False)

    response = client.post("/hooks/preferences", json={"user_id": 42, "method": "GET"})

    assert response.status_code == 202
    assert response.json()["queued"] == []


def test_hook_valid_signature(monkeypatch, client, fake_repository):
    monkeypatch.setattr(settings, "UNSUB_UPDATE_HOOK_SECRET", "test-secret")
    fake_repository.add(42, email_digests=False)

    raw = json.dumps({"user_id": 42}).encode("utf-8")
    response = client.post(
        "/hooks/preferences",
        content=raw,
        headers={
            hooks.SIGNATURE_HEADER: _make_signature("test-secret", raw),
            "Content-Type": "application/json",
        },
    )

    assert response.status_code == 202
    assert response.json()["queued"] == ["digest_set_to_never"]


def test_hook_invalid_signature(monkeypatch, client, task_queue):
    monkeypatch.setattr(settings, "UNSUB_UPDATE_HOOK_SECRET", "test-secret")

    raw = json.dumps({"user_id": 42}).encode("utf-8")
    response = client.post(
        "/hooks/preferences",
        content=raw,
        headers={hooks.SIGNATURE_HEADER: "bad", "Content-Type": "application/json"},
    )

    assert response.status_code == 401
    assert task_queue.redis.lists == {}


def test_hook_missing_signature(monkeypatch, client):
    monkeypatch.setattr(settings, "UNSUB_UPDATE_HOOK_SECRET", "test-secret")

    response = client.post("/hooks/unsubscribe", json={"key": "k-1"})

    assert response.status_code == 401


def test_user_options_hook_accepts_changed_values_only(monkeypatch, client, fake_repository):
    monkeypatch.setattr(settings, "UNSUB_UPDATE_HOOK_SECRET", None)
    monkeypatch.setattr(settings, "UNSUB_UPDATE_FORCE_DIGEST_NEVER_ON_NO_MAIL", True)
    fake_repository.add(42, email_level=2, email_digests=True, digest_after_minutes=1440)

    response = client.post(
        "/hooks/user-options",
        json={"subject_id": 42, "changed_fields": ["email_level"], "snapshot": {"email_level": 2}},
    )

    assert response.status_code == 202
    assert response.json()["queued"] == ["email_level_set_to_never", "digest_set_to_never"]
    assert fake_repository.force_calls == [42]
