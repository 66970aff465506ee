import uuid

import pytest

from hrms.storage.errors import ConstraintViolation
from hrms.storage.models import ActivityEvent, ActivityType, Identity, RefreshToken, Session


def _identity(email="m@example.com", **kwargs) -> Identity:
    return Identity(id=str(uuid.uuid4()), email=email, password_hash="x", **kwargs)


def test_create_identity_normalizes_email_and_ips(store):
    created = store.create_identity(_identity(" M@Example.com ", allowed_ips=["::ffff:10.0.0.1", "*"]))
    assert created.email == "m@example.com"
    assert created.allowed_ips == ["10.0.0.1", "*"]
    assert store.find_identity_by_email("M@EXAMPLE.COM") is created


def test_duplicate_email_is_a_constraint_violation(store):
    store.create_identity(_identity())
    with pytest.raises(ConstraintViolation):
        store.create_identity(_identity("M@example.com"))


def test_update_identity_rejects_unknown_fields(store):
    identity = store.create_identity(_identity())
    with pytest.raises(ValueError):
        store.update_identity(identity.id, email="other@example.com")
    assert store.update_identity("missing", city="Leeds") is None


def test_session_and_refresh_require_identity(store):
    with pytest.raises(ConstraintViolation):
        store.create_session(Session.new("missing", 60))
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(RefreshToken.new("tok", "missing", 60))


def test_rotate_refresh_token_is_single_use(store):
    identity = store.create_identity(_identity())
    store.create_refresh_token(RefreshToken.new("old", identity.id, 60))

    assert store.rotate_refresh_token("old", RefreshToken.new("new", identity.id, 60, replaces="old"))
    assert not store.rotate_refresh_token("old", RefreshToken.new("newer", identity.id, 60))
    assert store.find_refresh_token_by_value("newer") is None
    old, owner = store.find_refresh_token_by_value("old")
    assert old.is_revoked and old.replaced_by == "new"
    assert owner.id == identity.id


def test_global_allow_list(store):
    store.add_global_allowed_ip("::ffff:203.0.113.5")
    assert store.find_global_allowed_ip("203.0.113.5")
    assert not store.find_global_allowed_ip("203.0.113.6")


def test_activity_is_filterable_by_identity(store):
    store.record_activity(ActivityEvent("a", ActivityType.LOGIN, "in"))
    store.record_activity(ActivityEvent("b", ActivityType.LOGOUT, "out"))
    assert [e.identity_id for e in store.list_activity()] == ["a", "b"]
    assert [e.action for e in store.list_activity("b")] == [ActivityType.LOGOUT]
