import threading
from datetime import datetime, timedelta, timezone

import pytest

from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.memory import MemoryStore

EXPIRES = datetime(2030, 1, 1, tzinfo=timezone.utc)


def test_create_and_lookup_user():
    store = MemoryStore()
    user = store.create_user("erin@example.com", "hash", first_name="Erin")
    assert store.get_user(user.id) == user
    assert store.get_user_by_email("erin@example.com") == user
    assert store.get_user_by_email("nobody@example.com") is None
    assert user.is_active and not user.is_verified


def test_duplicate_email_raises_constraint_violation():
    store = MemoryStore()
    store.create_user("erin@example.com", "hash")
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("erin@example.com", "other")
    assert excinfo.value.detail == {"field": "email"}
    assert len(store.list_users()) == 1


def test_returned_objects_are_copies():
    store = MemoryStore()
    user = store.create_user("erin@example.com", "hash")
    user.first_name = "mutated"
    assert store.get_user(user.id).first_name is None


def test_update_user_whitelists_fields():
    store = MemoryStore()
    user = store.create_user("erin@example.com", "hash")
    updated = store.update_user(user.id, first_name="Erin", is_active=False)
    assert updated.first_name == "Erin"
    assert not updated.is_active
    with pytest.raises(ValueError):
        store.update_user(user.id, email="new@example.com")
    assert store.update_user("missing", first_name="x") is None


def test_revoke_counts_only_state_changes():
    store = MemoryStore()
    user = store.create_user("erin@example.com", "hash")
    other = store.create_user("frank@example.com", "hash")
    for token in ("t1", "t2", "t3"):
        store.create_refresh_token(token, user.id, EXPIRES)
    store.create_refresh_token("o1", other.id, EXPIRES)

    assert store.revoke_refresh_tokens(user.id, "t1") == 1
    assert store.revoke_refresh_tokens(user.id, "t1") == 0
    assert store.revoke_refresh_tokens(other.id, "t2") == 0
    assert store.revoke_refresh_tokens(user.id) == 2
    assert store.revoke_refresh_tokens(user.id) == 0
    assert not store.get_refresh_token("o1").is_revoked


def test_duplicate_refresh_token_is_rejected():
    store = MemoryStore()
    store.create_refresh_token("t1", "u1", EXPIRES)
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token("t1", "u1", EXPIRES)


def test_refresh_token_validity():
    store = MemoryStore()
    row = store.create_refresh_token("t1", "u1", EXPIRES)
    assert row.is_valid(EXPIRES - timedelta(seconds=1))
    assert row.is_expired(EXPIRES)
    store.revoke_refresh_tokens("u1", "t1")
    assert not store.get_refresh_token("t1").is_valid(EXPIRES - timedelta(days=1))


def test_concurrent_registration_has_one_winner():
    store = MemoryStore()
    results = []

    def _register():
        try:
            store.create_user("race@example.com", "hash")
            results.append("ok")
        except ConstraintViolation:
            results.append("conflict")

    threads = [threading.Thread(target=_register) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count("ok") == 1
    assert results.count("conflict") == 7
