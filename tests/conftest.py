"""
Pytest fixtures for the uconfig test suite.

Unit tests run the configuration manager over an in-memory DAO that still
stores values through a real ValueCodec, and an in-process cache store, so
no PostgreSQL or Redis is needed.
"""

import itertools
import threading
from datetime import datetime
from typing import Any

import pytest

from uconfig.cache.store import MemoryCacheStore
from uconfig.domain.config import (
    AuditAction,
    ConfigAudit,
    ConfigEntry,
    ConfigVersion,
    EntryState,
    is_valid_key,
)
from uconfig.domain.config import Category as ConfigCategory
from uconfig.domain.constants import NO_USER
from uconfig.domain.errors import DuplicateKeyError, InvalidInputError, PersistenceError
from uconfig.logger.logger import init_logger
from uconfig.logger.types import Level
from uconfig.security.codec import ValueCodec
from uconfig.services.config_manager import ConfigManager

TEST_SECRET = "test-encryption-secret"


@pytest.fixture(scope="session", autouse=True)
def logger():
    """Global logger printing to stdout."""
    return init_logger("uconfig-test", "test", min_level=Level.DEBUG)


@pytest.fixture
def codec() -> ValueCodec:
    return ValueCodec(TEST_SECRET)


class InMemoryConfigDao:
    """
    ConfigDao keeping rows in dicts.

    Values are stored encoded, the same way PostgresConfigDao stores them,
    so tests can inspect what lands at rest. ``calls`` counts every method
    invocation and ``fail_on`` makes the named method raise PersistenceError.
    """

    def __init__(self, codec: ValueCodec) -> None:
        self.codec = codec
        self.entries: dict[int, dict[str, Any]] = {}
        self.versions: list[dict[str, Any]] = []
        self.audits: list[dict[str, Any]] = []
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise PersistenceError(f"Simulated failure in {name}", operation=name)

    def _entry(self, row: dict[str, Any]) -> ConfigEntry:
        return ConfigEntry(
            id=row["id"],
            key=row["key"],
            value=self.codec.decode(row["value"]),
            category=ConfigCategory.parse(row["category"]),
            note=row["note"],
            state=row["state"],
            deleted_at=row["deleted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_all_configs(self) -> list[ConfigEntry]:
        with self._lock:
            self._enter("get_all_configs")
            rows = [r for r in self.entries.values() if r["state"] is EntryState.ACTIVE]
            return [self._entry(r) for r in sorted(rows, key=lambda r: r["key"])]

    def get_config_by_id(self, config_id: int) -> ConfigEntry | None:
        with self._lock:
            self._enter("get_config_by_id")
            row = self.entries.get(config_id)
            return self._entry(row) if row else None

    def get_config_by_key(self, key: str) -> ConfigEntry | None:
        with self._lock:
            self._enter("get_config_by_key")
            for row in self.entries.values():
                if row["key"] == key:
                    return self._entry(row)
            return None

    def create_config(self, data: dict[str, Any]) -> ConfigEntry:
        with self._lock:
            self._enter("create_config")
            key = data.get("key")
            if not is_valid_key(key):
                raise InvalidInputError("Invalid key", key=key)
            if any(r["key"] == key for r in self.entries.values()):
                raise DuplicateKeyError(f"Configuration with key '{key}' already exists", key=key)
            now = datetime.utcnow()
            row = {
                "id": next(self._ids),
                "key": key,
                "value": self.codec.encode(data.get("value")),
                "category": ConfigCategory.parse(data.get("category")).value,
                "note": data.get("note"),
                "state": EntryState.ACTIVE,
                "deleted_at": None,
                "created_at": now,
                "updated_at": now,
            }
            self.entries[row["id"]] = row
            return self._entry(row)

    def update_config(self, entry: ConfigEntry, data: dict[str, Any]) -> ConfigEntry:
        with self._lock:
            self._enter("update_config")
            if "key" in data and data["key"] != entry.key:
                raise InvalidInputError("Configuration key cannot be modified after creation")
            row = self.entries[entry.id]
            if "value" in data:
                row["value"] = self.codec.encode(data["value"])
            if "category" in data:
                row["category"] = ConfigCategory.parse(data["category"]).value
            if "note" in data:
                row["note"] = data["note"]
            row["updated_at"] = datetime.utcnow()
            return self._entry(row)

    def restore_config(self, entry: ConfigEntry) -> ConfigEntry:
        with self._lock:
            self._enter("restore_config")
            row = self.entries[entry.id]
            row["state"] = EntryState.ACTIVE
            row["deleted_at"] = None
            return self._entry(row)

    def delete_config(
        self, entry: ConfigEntry, user_id: int = NO_USER, record_audit: bool = True
    ) -> None:
        with self._lock:
            self._enter("delete_config")
            row = self.entries[entry.id]
            row["state"] = EntryState.DELETED
            row["deleted_at"] = datetime.utcnow()
            if record_audit:
                self._append_audit(entry.id, AuditAction.DELETED, entry.value, None, user_id)

    def create_version(self, entry: ConfigEntry, version: int) -> ConfigVersion:
        with self._lock:
            self._enter("create_version")
            if any(
                v["config_id"] == entry.id and v["version"] == version for v in self.versions
            ):
                raise PersistenceError("Duplicate version", version=version)
            row = {
                "id": len(self.versions) + 1,
                "config_id": entry.id,
                "version": version,
                "key": entry.key,
                "category": entry.category.value,
                "note": entry.note,
                "value": self.codec.encode(entry.value),
                "created_at": datetime.utcnow(),
            }
            self.versions.append(row)
            return self._version(row)

    def _version(self, row: dict[str, Any]) -> ConfigVersion:
        return ConfigVersion(
            id=row["id"],
            config_id=row["config_id"],
            version=row["version"],
            key=row["key"],
            category=ConfigCategory.parse(row["category"]),
            note=row["note"],
            value=self.codec.decode(row["value"]),
            created_at=row["created_at"],
        )

    def get_latest_version(self, config_id: int) -> int:
        with self._lock:
            self._enter("get_latest_version")
            numbers = [v["version"] for v in self.versions if v["config_id"] == config_id]
            return max(numbers, default=0)

    def get_versions(self, config_id: int) -> list[ConfigVersion]:
        with self._lock:
            self._enter("get_versions")
            rows = [v for v in self.versions if v["config_id"] == config_id]
            return [self._version(r) for r in sorted(rows, key=lambda r: r["version"])]

    def create_audit(
        self,
        config_id: int,
        action: AuditAction | str,
        old_value: Any,
        new_value: Any,
        user_id: int | None,
    ) -> ConfigAudit:
        with self._lock:
            self._enter("create_audit")
            return self._append_audit(config_id, AuditAction(action), old_value, new_value, user_id)

    def _append_audit(
        self,
        config_id: int,
        action: AuditAction,
        old_value: Any,
        new_value: Any,
        user_id: int | None,
    ) -> ConfigAudit:
        row = {
            "id": len(self.audits) + 1,
            "config_id": config_id,
            "action": action,
            "old_value": self.codec.encode(old_value),
            "new_value": self.codec.encode(new_value),
            "user_id": user_id,
            "created_at": datetime.utcnow(),
        }
        self.audits.append(row)
        return self._audit(row)

    def _audit(self, row: dict[str, Any]) -> ConfigAudit:
        return ConfigAudit(
            id=row["id"],
            config_id=row["config_id"],
            action=row["action"],
            old_value=self.codec.decode(row["old_value"]),
            new_value=self.codec.decode(row["new_value"]),
            user_id=row["user_id"],
            created_at=row["created_at"],
        )

    def get_audits_by_config_id(self, config_id: int) -> list[ConfigAudit]:
        with self._lock:
            self._enter("get_audits_by_config_id")
            return [self._audit(r) for r in self.audits if r["config_id"] == config_id]


class FakeSchema:
    """SchemaInspector with a switchable answer."""

    def __init__(self, present: bool = True) -> None:
        self.present = present

    def has_table(self, name: str) -> bool:
        return self.present


class RefusingLock:
    """CacheLock that is never acquired."""

    def __init__(self) -> None:
        self.released = False

    def acquire(self, blocking_timeout: float) -> bool:
        return False

    def release(self) -> None:
        self.released = True


@pytest.fixture
def dao(codec) -> InMemoryConfigDao:
    return InMemoryConfigDao(codec)


@pytest.fixture
def cache() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture
def schema() -> FakeSchema:
    return FakeSchema()


@pytest.fixture
def make_manager(dao, cache, schema):
    """Factory building a ConfigManager over the shared fixtures."""

    def _make(**overrides: Any) -> ConfigManager:
        kwargs: dict[str, Any] = {
            "dao": dao,
            "cache": cache,
            "schema": schema,
            "environ": {},
            "lock_wait": 0.5,
        }
        kwargs.update(overrides)
        return ConfigManager(**kwargs)

    return _make


@pytest.fixture
def manager(make_manager) -> ConfigManager:
    return make_manager()
