"""Tests for the lock gate shared by realms, clients, users, groups and tokens."""

from datetime import timedelta

import pytest

from realmgate.service.errors import InvalidLockTimestampError, LockedError
from realmgate.service.locks import check_locked_at_constraint, ensure_unlocked, is_locked
from realmgate.storage.models import Client, RefreshToken, ResourceGroup, User, utcnow


class TestIsLocked:
    def test_unset_lock_is_open(self):
        user = User(id="u1", realm_id="r1", email="a@example.com", first_name="A")
        assert is_locked(user) is False

    def test_past_lock_blocks(self):
        now = utcnow()
        user = User(id="u1", realm_id="r1", email="a@example.com", first_name="A", locked_at=now)
        assert is_locked(user, now) is True
        assert is_locked(user, now + timedelta(seconds=1)) is True

    def test_future_lock_does_not_block_yet(self):
        now = utcnow()
        client = Client(id="c1", realm_id="r1", name="web", locked_at=now + timedelta(minutes=5))
        assert is_locked(client, now) is False


class TestEnsureUnlocked:
    def test_none_entity_passes(self):
        ensure_unlocked(None)

    def test_locked_group_raises_with_kind(self):
        group = ResourceGroup(
            group_key="g1",
            realm_id="r1",
            user_id="u1",
            client_id="c1",
            name="default",
            locked_at=utcnow() - timedelta(seconds=1),
        )
        with pytest.raises(LockedError) as exc_info:
            ensure_unlocked(group, kind="resource_group")
        err = exc_info.value
        assert err.status_code == 403
        assert err.error_code == "locked"
        assert err.detail == {"entity": "resource_group", "id": "g1"}

    def test_default_kind_uses_class_name(self):
        token = RefreshToken.new("u1", "c1", "r1")
        token.locked_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(LockedError) as exc_info:
            ensure_unlocked(token)
        assert exc_info.value.detail["entity"] == "refreshtoken"
        assert exc_info.value.detail["id"] == token.id


class TestLockedAtConstraint:
    def test_past_and_missing_timestamps_allowed(self):
        check_locked_at_constraint(None)
        check_locked_at_constraint(utcnow() - timedelta(days=1))

    def test_future_timestamp_rejected(self):
        with pytest.raises(InvalidLockTimestampError) as exc_info:
            check_locked_at_constraint(utcnow() + timedelta(hours=1))
        assert exc_info.value.status_code == 400
        assert exc_info.value.reason == "invalid_lock_timestamp"
