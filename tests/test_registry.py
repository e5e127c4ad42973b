"""Tests for branch_sync.registry -- location CRUD and encrypted passwords."""

from __future__ import annotations

from datetime import datetime

import pytest
from pydantic import SecretStr
from sqlalchemy import select

from branch_sync.credentials import CredentialCipher, generate_key
from branch_sync.errors import CredentialError, LocationNotFoundError, SyncInProgressError
from branch_sync.registry import LocationRegistry
from branch_sync.schema import remote_locations
from branch_sync.sync.models import TableId


class TestQueries:
    def test_add_assigns_id(self, registry, make_location):
        saved = registry.add(make_location())
        assert saved.location_id is not None
        assert registry.get(saved.location_id).location_name == "Branch A"

    def test_list_sorted_by_name(self, registry, make_location):
        registry.add(make_location(location_name="Zarqa"))
        registry.add(make_location(location_name="Amman"))
        assert [l.location_name for l in registry.list_locations()] == ["Amman", "Zarqa"]

    def test_list_active_only(self, registry, make_location):
        registry.add(make_location(location_name="Open"))
        registry.add(make_location(location_name="Closed", is_active=False))
        assert [l.location_name for l in registry.list_locations(active_only=True)] == ["Open"]

    def test_unknown_id(self, registry):
        with pytest.raises(LocationNotFoundError, match="Location 99 not found"):
            registry.get(99)

    def test_values_are_trimmed(self, registry, make_location):
        saved = registry.add(make_location(location_name=" Branch A ", host=" 10.0.0.5 "))
        loaded = registry.get(saved.location_id)
        assert (loaded.location_name, loaded.host) == ("Branch A", "10.0.0.5")


class TestPasswords:
    def test_stored_encrypted(self, registry, location, local_engine):
        with local_engine.connect() as conn:
            stored = conn.execute(select(remote_locations.c.password)).scalar_one()
        assert "s3cret" not in stored
        assert registry.get(location.location_id).password.get_secret_value() == "s3cret"

    def test_wrong_key_cannot_read(self, local_engine, location):
        other = LocationRegistry(local_engine, CredentialCipher(generate_key()))
        with pytest.raises(CredentialError, match="re-enter"):
            other.get(location.location_id)


class TestChanges:
    def test_update(self, registry, location):
        registry.update(location.model_copy(update={"host": "10.0.0.9", "password": SecretStr("new")}))
        loaded = registry.get(location.location_id)
        assert loaded.host == "10.0.0.9"
        assert loaded.password.get_secret_value() == "new"

    def test_update_unknown(self, registry, make_location):
        with pytest.raises(LocationNotFoundError):
            registry.update(make_location(location_id=42))

    def test_update_unsaved(self, registry, make_location):
        with pytest.raises(LocationNotFoundError):
            registry.update(make_location())

    def test_delete_removes_watermarks(self, registry, location, local_engine, watermarks):
        with local_engine.begin() as conn:
            watermarks.advance(conn, location.location_id, TableId.USERS, datetime(2024, 1, 1))
            watermarks.record_applied(
                conn, location.location_id, TableId.USERS, "1001", datetime(2024, 1, 2)
            )

        registry.delete(location.location_id)

        with pytest.raises(LocationNotFoundError):
            registry.get(location.location_id)
        assert watermarks.get(location.location_id, TableId.USERS) is None
        assert watermarks.applied_stamps(location.location_id) == {}

    def test_delete_unknown(self, registry):
        with pytest.raises(LocationNotFoundError):
            registry.delete(5)

    def test_locked_location_cannot_change(self, registry, location):
        registry.locks.try_acquire(location.location_id)
        with pytest.raises(SyncInProgressError, match="already in progress for 'Branch A'"):
            registry.update(location)
        with pytest.raises(SyncInProgressError):
            registry.delete(location.location_id)
        registry.locks.release(location.location_id)
        registry.delete(location.location_id)


class TestSyncStatus:
    def test_status_is_truncated(self, registry, location):
        at = datetime(2024, 2, 1, 9, 0)
        registry.update_sync_status(location.location_id, "Failed: " + "x" * 80, at)

        loaded = registry.get(location.location_id)
        assert len(loaded.last_sync_status) == 50
        assert loaded.last_sync_time == at
