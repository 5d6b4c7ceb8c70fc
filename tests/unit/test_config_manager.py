"""
Unit tests for ConfigManager.

Covers reads with defaults, versioned and audited writes, soft delete and
restore, cache sharing between managers and the cache lock.
"""

import threading

import pytest

from tests.conftest import RefusingLock
from uconfig.cache.store import CacheUnavailableError, MemoryCacheStore
from uconfig.domain.config import AuditAction, Category, EntryState
from uconfig.domain.constants import NO_USER
from uconfig.domain.errors import (
    ConfigNotFoundError,
    ErrorKind,
    InvalidInputError,
    PersistenceError,
)
from uconfig.services.config_manager import CACHE_KEY, ConfigManager


def fail_nth_lookup(dao, monkeypatch, n):
    """Make the n-th get_config_by_key call on the DAO fail."""
    original = dao.get_config_by_key
    calls = []

    def lookup(key):
        calls.append(key)
        if len(calls) == n:
            raise PersistenceError("read failed", key=key)
        return original(key)

    monkeypatch.setattr(dao, "get_config_by_key", lookup)


class BrokenCache:
    """CacheStore whose backend is always down."""

    def get(self, key, default=None):
        raise CacheUnavailableError("down")

    def remember(self, key, ttl, producer):
        raise CacheUnavailableError("down")

    def forever(self, key, value):
        raise CacheUnavailableError("down")

    def forget(self, key):
        raise CacheUnavailableError("down")

    def lock(self, name, timeout):
        return RefusingLock()


class TestReads:
    """Lookups and defaults."""

    @pytest.mark.parametrize("silent", [True, False])
    def test_missing_key_returns_default(self, manager, silent):
        """Unknown keys give the default whether or not logging is silenced."""
        assert manager.get("missing.key", "fallback", silent=silent) == "fallback"
        assert manager.get("missing.key", silent=silent) is None

    def test_schema_absent_returns_default(self, manager, schema):
        """Without the configuration table every get yields the default."""
        manager.set("app.name", "uconfig")
        schema.present = False

        assert manager.get("app.name", "default") == "default"

    def test_env_does_not_override_database(self, dao, make_manager):
        """Environment variables only fill keys the database lacks."""
        dao.create_config({"key": "APP_NAME", "value": "from-db"})

        manager = make_manager(environ={"APP_NAME": "from-env", "EXTRA_VAR": "x"})

        assert manager.get("APP_NAME") == "from-db"
        assert manager.get("EXTRA_VAR") == "x"

    def test_null_database_value_is_skipped(self, dao, make_manager):
        """Entries without a value are left out of the map."""
        dao.create_config({"key": "empty.value", "value": None})

        manager = make_manager()

        assert "empty.value" not in manager.all()
        assert manager.get("empty.value", "d") == "d"

    def test_get_returns_copy(self, manager):
        """Mutating a returned value does not touch the stored one."""
        manager.set("feature.flags", {"beta": True})

        flags = manager.get("feature.flags")
        flags["beta"] = False

        assert manager.get("feature.flags") == {"beta": True}

    def test_has(self, manager):
        manager.set("app.debug", False)

        assert manager.has("app.debug") is True
        assert manager.has("app.missing") is False


class TestSet:
    """Creating and updating entries."""

    def test_read_your_writes(self, manager):
        """A value is readable right after it is set."""
        manager.set("app.timeout", 30, Category.PERFORMANCE)

        assert manager.get("app.timeout") == 30
        assert manager.all()["app.timeout"] == 30

    def test_values_are_encrypted_at_rest(self, manager, dao):
        """The stored column never holds the plaintext."""
        entry = manager.set("api.token", "secret-token")

        stored = dao.entries[entry.id]["value"]
        assert stored != "secret-token"
        assert "secret-token" not in stored
        assert dao.codec.decode(stored) == "secret-token"

    @pytest.mark.parametrize("key", ["bad key", "", "key/with/slash", "ключ", None, 12])
    def test_invalid_key_touches_nothing(self, manager, dao, key):
        """A rejected key causes no DAO calls at all."""
        calls_before = len(dao.calls)

        with pytest.raises(InvalidInputError) as exc_info:
            manager.set(key, "value")

        assert exc_info.value.kind is ErrorKind.INVALID_INPUT
        assert len(dao.calls) == calls_before

    def test_invalid_value_type_rejected(self, manager, dao):
        with pytest.raises(InvalidInputError):
            manager.set("app.thing", object())

        assert "create_config" not in dao.calls

    def test_invalid_category_rejected(self, manager, dao):
        with pytest.raises(InvalidInputError):
            manager.set("app.thing", "x", "bogus")

        assert "create_config" not in dao.calls
        assert manager.get("app.thing") is None

    def test_two_sets_give_two_versions(self, manager, dao):
        """Each set records the next version with the decrypted value."""
        manager.set("app.mode", "v1")
        entry = manager.set("app.mode", "v2")

        versions = dao.get_versions(entry.id)
        assert [v.version for v in versions] == [1, 2]
        assert [v.value for v in versions] == ["v1", "v2"]

    def test_audit_records_old_and_new_values(self, manager, dao):
        manager.set("app.mode", "v1")
        entry = manager.set("app.mode", "v2", user=5)

        audits = dao.get_audits_by_config_id(entry.id)
        assert [a.action for a in audits] == [AuditAction.UPDATED, AuditAction.UPDATED]
        assert (audits[0].old_value, audits[0].new_value, audits[0].user_id) == (None, "v1", NO_USER)
        assert (audits[1].old_value, audits[1].new_value, audits[1].user_id) == ("v1", "v2", 5)

    def test_user_from_actor_provider(self, make_manager, dao):
        """Without an explicit user the actor provider supplies the id."""

        class Actor:
            def current_user_id(self):
                return 99

        manager = make_manager(actor=Actor())
        entry = manager.set("app.mode", "on")

        assert dao.get_audits_by_config_id(entry.id)[0].user_id == 99

    def test_skip_version_and_audit(self, manager, dao):
        entry = manager.set("app.mode", "on", record_version=False, record_audit=False)

        assert dao.get_versions(entry.id) == []
        assert dao.get_audits_by_config_id(entry.id) == []

    def test_failed_save_rolls_back_map(self, manager, dao):
        """When the entry cannot be stored the optimistic map update is undone."""
        dao.fail_on.add("create_config")

        with pytest.raises(PersistenceError):
            manager.set("app.mode", "lost")

        assert manager.get("app.mode") is None
        assert dao.versions == []
        assert dao.audits == []

    def test_refresh_failure_after_commit_is_not_fatal(self, manager, dao, monkeypatch):
        """Once the entry is stored, a failing cache refresh read only logs."""
        fail_nth_lookup(dao, monkeypatch, 2)

        entry = manager.set("app.mode", "on")

        assert entry.key == "app.mode"
        assert manager.get("app.mode") == "on"
        assert len(dao.get_versions(entry.id)) == 1
        assert len(dao.get_audits_by_config_id(entry.id)) == 1

    @pytest.mark.parametrize("user", ["abc", 1j, True, []])
    def test_invalid_user_rejected(self, manager, dao, user):
        with pytest.raises(InvalidInputError):
            manager.set("app.mode", "on", user=user)

        assert "create_config" not in dao.calls
        assert manager.get("app.mode") is None

    def test_user_object_with_id(self, manager, dao):
        class User:
            id = "17"

        entry = manager.set("app.mode", "on", user=User())

        assert dao.get_audits_by_config_id(entry.id)[0].user_id == 17

    def test_failed_update_restores_previous_value(self, manager, dao):
        manager.set("app.mode", "kept")
        dao.fail_on.add("update_config")

        with pytest.raises(PersistenceError):
            manager.set("app.mode", "lost")

        assert manager.get("app.mode") == "kept"

    def test_version_failure_is_not_fatal(self, manager, dao):
        """Version history is best-effort; the entry and audit still land."""
        dao.fail_on.add("create_version")

        entry = manager.set("app.mode", "on")

        assert manager.get("app.mode") == "on"
        assert dao.versions == []
        assert len(dao.get_audits_by_config_id(entry.id)) == 1

    def test_concurrent_sets_of_distinct_keys(self, make_manager, dao):
        """Parallel writers on distinct keys all end up stored and visible."""
        manager = make_manager(lock_wait=10.0)
        keys = [f"worker.{i}" for i in range(16)]
        errors = []

        def write(key):
            try:
                manager.set(key, key.upper())
            except Exception as e:  # surfaced through the assertion below
                errors.append(e)

        threads = [threading.Thread(target=write, args=(key,)) for key in keys]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        snapshot = manager.all()
        for key in keys:
            assert snapshot[key] == key.upper()
        assert {e.key for e in dao.get_all_configs()} == set(keys)


class TestDelete:
    """Soft delete and restore."""

    def test_delete_hides_key_and_audits(self, manager, dao):
        manager.set("app.mode", "v1")
        manager.delete("app.mode", user=3)

        assert manager.get("app.mode", "gone") == "gone"

        entry = dao.get_config_by_key("app.mode")
        assert entry.state is EntryState.DELETED
        assert entry.deleted_at is not None

        last = dao.get_audits_by_config_id(entry.id)[-1]
        assert last.action is AuditAction.DELETED
        assert last.old_value == "v1"
        assert last.new_value is None
        assert last.user_id == 3

    def test_delete_records_version(self, manager, dao):
        entry = manager.set("app.mode", "v1")
        manager.delete("app.mode")

        assert [v.version for v in dao.get_versions(entry.id)] == [1, 2]

    def test_set_after_delete_restores(self, manager, dao):
        """Re-setting a deleted key reuses and reactivates the same entry."""
        first = manager.set("app.mode", "v1")
        manager.delete("app.mode")

        second = manager.set("app.mode", "v2")

        assert second.id == first.id
        assert second.state is EntryState.ACTIVE
        assert "restore_config" in dao.calls
        assert manager.get("app.mode") == "v2"
        assert [v.version for v in dao.get_versions(first.id)] == [1, 2, 3]

    def test_delete_unknown_key_is_noop(self, manager, dao):
        manager.delete("never.set")

        assert "delete_config" not in dao.calls

    def test_delete_invalid_key(self, manager):
        with pytest.raises(InvalidInputError):
            manager.delete("bad key")

    def test_delete_failure_propagates(self, manager, dao):
        manager.set("app.mode", "v1")
        dao.fail_on.add("delete_config")

        with pytest.raises(PersistenceError):
            manager.delete("app.mode")

    def test_failed_delete_keeps_key_readable(self, manager, dao):
        """The in-memory item comes back when the soft delete is not stored."""
        manager.set("app.a", "A")
        manager.set("app.b", "B")
        dao.fail_on.add("delete_config")

        with pytest.raises(PersistenceError):
            manager.delete("app.a")

        assert manager.get("app.a") == "A"
        assert dao.get_config_by_key("app.a").state is EntryState.ACTIVE

    def test_failed_lookup_keeps_key_readable(self, manager, dao, monkeypatch):
        manager.set("app.a", "A")
        manager.set("app.b", "B")
        fail_nth_lookup(dao, monkeypatch, 1)

        with pytest.raises(PersistenceError):
            manager.delete("app.a")

        assert manager.get("app.a") == "A"

    def test_delete_refresh_failure_is_not_fatal(self, manager, dao, monkeypatch):
        entry = manager.set("app.mode", "v1")
        fail_nth_lookup(dao, monkeypatch, 2)

        manager.delete("app.mode")

        assert dao.entries[entry.id]["state"] is EntryState.DELETED

    def test_delete_invalid_user(self, manager, dao):
        manager.set("app.mode", "v1")

        with pytest.raises(InvalidInputError):
            manager.delete("app.mode", user="not-a-number")

        assert "delete_config" not in dao.calls
        assert manager.get("app.mode") == "v1"


class TestCache:
    """Shared cache and the refresh lock."""

    def test_second_manager_reads_shared_cache(self, manager, make_manager, dao):
        """A manager started after a write is served from the cache."""
        manager.set("app.mode", "cached")
        dao.calls.clear()

        other = make_manager()

        assert other.get("app.mode") == "cached"
        assert "get_all_configs" not in dao.calls

    def test_restart_rehydrates_from_database(self, make_manager, cache):
        """End to end: set with a user, restart, read back."""
        manager = make_manager()
        entry = manager.set("mail.driver", "smtp", "system", user=42)

        versions = manager.dao.get_versions(entry.id)
        assert [(v.version, v.value) for v in versions] == [(1, "smtp")]
        audit = manager.dao.get_audits_by_config_id(entry.id)[0]
        assert (audit.action, audit.old_value, audit.new_value, audit.user_id) == (
            AuditAction.UPDATED,
            None,
            "smtp",
            42,
        )
        assert cache.get(CACHE_KEY)["mail.driver"] == {"value": "smtp", "category": "system"}

        cache.flush()
        restarted = make_manager()

        assert restarted.get("mail.driver") == "smtp"

    def test_expired_cached_map_is_rebuilt_in_full(self, manager, make_manager, cache):
        """A write after the cached map expired must not leave a one-key map behind."""
        manager.set("app.a", "A")
        manager.set("app.b", "B")
        cache.forget(CACHE_KEY)

        manager.set("app.c", "C")

        assert set(cache.get(CACHE_KEY)) == {"app.a", "app.b", "app.c"}
        restarted = make_manager()
        assert restarted.get("app.a", "DEFAULT") == "A"
        assert restarted.get("app.c") == "C"

    def test_map_rebuilt_after_ttl_expiry(self, make_manager):
        now = [0.0]
        cache = MemoryCacheStore(clock=lambda: now[0])
        manager = make_manager(cache=cache, cache_ttl=60)
        manager.set("app.a", "A")
        cache.put(CACHE_KEY, {"app.a": {"value": "A", "category": ""}}, 60)
        now[0] += 61

        manager.set("app.b", "B")

        restarted = make_manager(cache=cache)
        assert restarted.get("app.a") == "A"
        assert restarted.get("app.b") == "B"

    def test_refresh_skipped_without_lock(self, manager, cache, monkeypatch):
        """If the lock is held elsewhere the stale cache stays untouched."""
        cache.forever(CACHE_KEY, {"stale": {"value": 1, "category": ""}})
        refusing = RefusingLock()
        monkeypatch.setattr(cache, "lock", lambda name, timeout: refusing)

        manager.refresh_cache()

        assert cache.get(CACHE_KEY) == {"stale": {"value": 1, "category": ""}}
        assert refusing.released is False

    def test_full_refresh_picks_up_database_changes(self, manager, dao, cache):
        dao.create_config({"key": "added.later", "value": "x"})

        manager.refresh_cache()

        assert manager.get("added.later") == "x"
        assert cache.get(CACHE_KEY)["added.later"]["value"] == "x"

    def test_cache_disabled_leaves_store_empty(self, make_manager, cache):
        manager = make_manager(cache_enabled=False)

        manager.set("app.mode", "on")

        assert manager.get("app.mode") == "on"
        assert cache.get(CACHE_KEY) is None

    def test_cache_outage_falls_back_to_database(self, dao, make_manager):
        """Reads and writes keep working when the cache backend is down."""
        dao.create_config({"key": "app.mode", "value": "db"})

        manager = make_manager(cache=BrokenCache())
        manager.set("app.other", "written")

        assert manager.get("app.mode") == "db"
        assert manager.get("app.other") == "written"

    def test_reload_bypasses_cache(self, manager, dao, cache):
        cache.forever(CACHE_KEY, {})
        dao.create_config({"key": "app.fresh", "value": 1})

        manager.reload()

        assert manager.get("app.fresh") == 1


class TestHistory:

    def test_history(self, manager):
        manager.set("app.mode", "v1")
        manager.set("app.mode", "v2")

        history = manager.history("app.mode")

        assert history.entry.value == "v2"
        assert [v.value for v in history.versions] == ["v1", "v2"]
        assert len(history.audits) == 2

    def test_history_unknown_key(self, manager):
        with pytest.raises(ConfigNotFoundError) as exc_info:
            manager.history("never.set")

        assert exc_info.value.kind is ErrorKind.NOT_FOUND


def test_manager_is_usable_without_optional_collaborators(dao, cache):
    """Schema, actor and version manager all have defaults."""
    manager = ConfigManager(dao, cache, environ={})

    entry = manager.set("app.mode", "on")

    assert manager.get("app.mode") == "on"
    assert dao.get_audits_by_config_id(entry.id)[0].user_id == NO_USER
