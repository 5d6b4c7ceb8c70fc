"""Configuration manager: in-memory map, shared cache, versioned and audited writes.

Reads are served from an in-memory map of ``key -> {"value", "category"}``
built from the database plus environment variables and shared with other
processes through the cache store. Writes go to the database first, then to
the version and audit history (best-effort), and finally refresh the shared
cache under an advisory lock.
"""

import copy
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from uconfig.cache.store import CacheStore, CacheUnavailableError
from uconfig.database.schema import CONFIG_TABLE, SchemaInspector
from uconfig.domain.config import (
    AuditAction,
    ConfigAudit,
    ConfigEntry,
    ConfigVersion,
    is_valid_key,
)
from uconfig.domain.config import Category as ConfigCategory
from uconfig.domain.constants import NO_USER
from uconfig.domain.errors import (
    ConfigError,
    ConfigNotFoundError,
    InvalidInputError,
    PersistenceError,
)
from uconfig.logger.logger import get_logger
from uconfig.logger.types import Category, category, param
from uconfig.repository.config_dao import ConfigDao
from uconfig.repository.postgres_config_dao import parse_category
from uconfig.services.identity import ActorProvider, StaticActorProvider
from uconfig.services.version_manager import VersionManager

CACHE_KEY = "ultra_config.cache"
LOCK_NAME = "ultra_config_cache_lock"

_SCALARS = (str, int, float, bool)
_MISSING = object()


def normalize_value(value: Any) -> Any:
    """
    Check that a value can be stored and return its canonical form.

    Scalars, None, lists, tuples and string-keyed dicts (recursively) are
    accepted; tuples become lists.

    Raises:
        InvalidInputError: For any other type
    """
    if value is None or isinstance(value, _SCALARS):
        return value
    if isinstance(value, (list, tuple)):
        return [normalize_value(item) for item in value]
    if isinstance(value, dict):
        if not all(isinstance(k, str) for k in value):
            raise InvalidInputError("Configuration value keys must be strings")
        return {k: normalize_value(v) for k, v in value.items()}
    raise InvalidInputError(
        "Configuration value must be scalar, array, or null",
        value_type=type(value).__name__,
    )


@dataclass(frozen=True)
class ConfigHistory:
    """An entry with its versions and audit trail."""

    entry: ConfigEntry
    versions: list[ConfigVersion]
    audits: list[ConfigAudit]


class _AllTablesPresent:
    def has_table(self, name: str) -> bool:
        return True


class ConfigManager:
    """Centralized configuration access with caching, versioning and auditing."""

    def __init__(
        self,
        dao: ConfigDao,
        cache: CacheStore,
        version_manager: VersionManager | None = None,
        schema: SchemaInspector | None = None,
        actor: ActorProvider | None = None,
        environ: Mapping[str, str] | None = None,
        cache_enabled: bool = True,
        cache_ttl: int = 3600,
        lock_timeout: float = 10.0,
        lock_wait: float = 3.0,
    ) -> None:
        """
        Initialize ConfigManager and load the configuration map.

        Args:
            dao: Persistence for entries, versions and audits
            cache: Shared cache store
            version_manager: Version allocator (built over dao when None)
            schema: Table inspector; tables are assumed present when None
            actor: Source of the current user id for audits
            environ: Environment variables merged under database keys
            cache_enabled: Use the cache store for the configuration map
            cache_ttl: Seconds the map stays cached after a full load
            lock_timeout: Seconds before a held cache lock expires
            lock_wait: Seconds to wait for the cache lock before giving up
        """
        self.dao = dao
        self.cache = cache
        self.version_manager = version_manager or VersionManager(dao)
        self.schema = schema or _AllTablesPresent()
        self.actor = actor or StaticActorProvider()
        self.environ = environ if environ is not None else os.environ
        self.cache_enabled = cache_enabled
        self.cache_ttl = cache_ttl
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait
        self.logger = get_logger().with_category(Category.CONFIG)

        self._config: dict[str, dict[str, Any]] = {}
        self._guard = threading.RLock()

        self.load_config()
        self.logger.info("ConfigManager initialized", param("keys", len(self._config)))

    # Loading

    def load_config(self) -> None:
        """Populate the in-memory map from the cache, or from database and env."""
        self.logger.info("Loading configurations")

        if self.cache_enabled:
            try:
                loaded = self.cache.remember(CACHE_KEY, self.cache_ttl, self._build_config)
                self.logger.debug(
                    "Configurations loaded through cache",
                    param("ttl", self.cache_ttl),
                )
            except CacheUnavailableError as e:
                self.logger.warn(
                    "Cache unavailable, loading configurations from database",
                    param("error", str(e)),
                )
                loaded = self._build_config()
        else:
            loaded = self._build_config()
            self.logger.debug("Configurations loaded without cache")

        with self._guard:
            self._config = dict(loaded or {})

    def _build_config(self) -> dict[str, dict[str, Any]]:
        """Database entries merged with env variables the database does not define."""
        config = self._load_from_database()
        added = 0
        for name, value in self.environ.items():
            if name not in config:
                config[name] = {"value": value, "category": ConfigCategory.NONE.value}
                added += 1
        self.logger.debug(
            "Environment variables merged into configurations",
            param("env_keys", added),
        )
        return config

    def _load_from_database(self) -> dict[str, dict[str, Any]]:
        config: dict[str, dict[str, Any]] = {}
        if not self.schema.has_table(CONFIG_TABLE):
            self.logger.warn(f"The '{CONFIG_TABLE}' table does not exist")
            return config

        try:
            entries = self.dao.get_all_configs()
        except ConfigError as e:
            self.logger.error("Error loading configurations from database", e)
            return config

        for entry in entries:
            if entry.value is None:
                self.logger.warn(
                    f"Configuration with key {entry.key} has a null value and will be ignored",
                    param("key", entry.key),
                )
                continue
            config[entry.key] = entry.to_cache_item()

        self.logger.info(
            "Configurations loaded from database",
            param("count", len(config)),
        )
        return config

    # Reads

    def get(self, key: str, default: Any = None, silent: bool = False) -> Any:
        """
        Return the value of a configuration key.

        Args:
            key: Configuration key
            default: Returned when the key is unknown or has no value
            silent: Suppress log lines (never changes the result)

        Returns:
            The stored value or default
        """
        if not self.schema.has_table(CONFIG_TABLE):
            if not silent:
                self.logger.warn(
                    f"The '{CONFIG_TABLE}' table does not exist, returning default",
                    param("key", key),
                    param("default", default),
                )
            return default

        with self._guard:
            empty = not self._config
        if empty:
            self._hydrate_from_cache(key, silent)

        with self._guard:
            item = self._config.get(key)
            value = copy.deepcopy(item.get("value")) if item else None

        if value is None:
            if not silent:
                self.logger.info(
                    f"Config key '{key}' not found, using default",
                    param("key", key),
                    param("default", default),
                )
            return default
        return value

    def _hydrate_from_cache(self, key: str, silent: bool) -> None:
        """Fill an empty in-memory map from the cache store only."""
        try:
            cached = self.cache.get(CACHE_KEY, {}) or {}
        except CacheUnavailableError as e:
            if not silent:
                self.logger.warn("Cache unavailable", param("error", str(e)))
            return

        with self._guard:
            if not self._config:
                self._config = dict(cached)
        if not silent:
            self.logger.debug(
                "Loaded configurations from cache",
                param("key", key),
            )

    def has(self, key: str) -> bool:
        """Check if the key resolves to a non-null value."""
        return self.get(key, None, True) is not None

    def all(self) -> dict[str, Any]:
        """All known keys with their values."""
        with self._guard:
            return {
                key: copy.deepcopy(item.get("value"))
                for key, item in self._config.items()
            }

    # Writes

    def set(
        self,
        key: str,
        value: Any,
        category: ConfigCategory | str | None = None,
        user: Any = None,
        record_version: bool = True,
        record_audit: bool = True,
    ) -> ConfigEntry:
        """
        Create or update a configuration entry.

        Args:
            key: Configuration key (alphanumeric with _ . -)
            value: Scalar, list, dict or None
            category: Category tag
            user: Acting user id (or an object with an ``id``); defaults to the actor provider
            record_version: Record a version snapshot
            record_audit: Record an 'updated' audit row

        Returns:
            The persisted ConfigEntry

        Raises:
            InvalidInputError: On a bad key, value, category or user (nothing is persisted)
            PersistenceError: If the entry could not be stored
            DuplicateKeyError: If a concurrent writer created the key first
        """
        self._validate_key(key)
        try:
            value = normalize_value(value)
            config_category = parse_category(category)
            user_id = self._resolve_user_id(user)
        except InvalidInputError:
            self.logger.error(f"Invalid input for configuration key: {key}", None, param("key", key))
            raise

        old_value = self.get(key, None, silent=True)
        with self._guard:
            previous = self._config.get(key)
            self._config[key] = {
                "value": copy.deepcopy(value),
                "category": config_category.value,
            }

        try:
            entry = self._save_entry(key, value, config_category)
        except ConfigError as e:
            self._restore_item(key, previous)
            self.logger.error(f"Failed to set configuration {key}", e, param("key", key))
            raise

        if record_version:
            self._save_version(entry)
        if record_audit:
            self._save_audit(entry, AuditAction.UPDATED, old_value, value, user_id)

        self._refresh_after_write(key)
        self.logger.info(f"Configuration set successfully: {key}", param("key", key))
        return entry

    def _save_entry(
        self, key: str, value: Any, category: ConfigCategory
    ) -> ConfigEntry:
        """Create the entry, or restore and update the existing one."""
        data: dict[str, Any] = {"value": value, "category": category}
        try:
            entry = self.dao.get_config_by_key(key)
            if entry is not None:
                if entry.is_deleted:
                    entry = self.dao.restore_config(entry)
                    self.logger.info(f"Configuration restored: {key}", param("key", key))
                entry = self.dao.update_config(entry, data)
            else:
                data["key"] = key
                entry = self.dao.create_config(data)
        except ConfigError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Failed to persist configuration {key}: {e}", key=key
            ) from e

        if entry is None:
            raise PersistenceError(f"Failed to persist configuration {key}", key=key)

        self.logger.info(f"Configuration saved to database: {key}", param("key", key))
        return entry

    def _save_version(self, entry: ConfigEntry) -> None:
        """Record a version snapshot; failures are logged, not raised."""
        try:
            version = self.version_manager.get_next_version(entry.id)
            self.dao.create_version(entry, version)
            self.logger.info(
                f"Version recorded for configuration: {entry.key}",
                param("key", entry.key),
                param("version", version),
            )
        except Exception as e:
            self.logger.error(
                f"Error registering version for configuration {entry.key}",
                e,
                param("key", entry.key),
            )

    def _save_audit(
        self,
        entry: ConfigEntry,
        action: AuditAction,
        old_value: Any,
        new_value: Any,
        user_id: int,
    ) -> None:
        """Record an audit row; failures are logged, not raised."""
        try:
            self.dao.create_audit(
                entry.id,
                action,
                old_value,
                new_value,
                user_id,
            )
            self.logger.info(
                f"Audit recorded for action {action.value} on configuration: {entry.key}",
                param("key", entry.key),
                param("action", action.value),
            )
        except Exception as e:
            self.logger.error(
                f"Error registering audit for configuration {entry.key}",
                e,
                param("key", entry.key),
            )

    def delete(
        self,
        key: str,
        record_version: bool = True,
        record_audit: bool = True,
        user: Any = None,
    ) -> None:
        """
        Soft-delete a configuration entry.

        Args:
            key: Configuration key
            record_version: Record a version snapshot of the value being deleted
            record_audit: Record a 'deleted' audit row
            user: Acting user id (or an object with an ``id``)

        Raises:
            InvalidInputError: On a bad key or user
            PersistenceError: If the deletion could not be stored
        """
        self._validate_key(key, operation="deletion")
        user_id = self._resolve_user_id(user)

        with self._guard:
            previous = self._config.pop(key, None)

        try:
            entry = self.dao.get_config_by_key(key)
        except ConfigError as e:
            self._restore_item(key, previous)
            self.logger.error(f"Error deleting configuration {key}", e, param("key", key))
            raise

        if entry is None or entry.is_deleted:
            self.logger.warn(
                f"No configuration found to delete for key: {key}",
                param("key", key),
            )
            return

        if record_version:
            self._save_version(entry)

        try:
            self.dao.delete_config(entry, user_id, record_audit=record_audit)
        except ConfigError as e:
            self._restore_item(key, previous)
            self.logger.error(f"Error deleting configuration {key}", e, param("key", key))
            raise

        self._refresh_after_write(key)
        self.logger.info(f"Configuration deleted: {key}", param("key", key))

    # Cache

    def refresh_cache(self, key: str | None = None) -> None:
        """
        Rewrite the shared cache under the advisory lock.

        With a key, only that key is re-read from the database and merged
        into the cached map; without one, or when the cached map has expired,
        the whole map is rebuilt. If the lock cannot be acquired in time the
        refresh is skipped and the stale cache stays in place.

        Raises:
            CacheUnavailableError: If the cache store fails
            ConfigError: If the database read fails
        """
        lock = self.cache.lock(LOCK_NAME, self.lock_timeout)
        acquired = False
        try:
            acquired = lock.acquire(self.lock_wait)
            if not acquired:
                self.logger.warn(
                    "Failed to acquire lock for cache refresh",
                    param("key", key),
                    category(Category.CACHE),
                )
                return

            if key:
                self._refresh_key(key)
                self.logger.info(
                    f"Incremental cache refresh for key: {key}",
                    param("key", key),
                    category(Category.CACHE),
                )
            else:
                self._rebuild_cache()
        except (CacheUnavailableError, ConfigError) as e:
            self.logger.error("Error refreshing cache", e, param("key", key), category(Category.CACHE))
            raise
        finally:
            if acquired:
                lock.release()

    def _rebuild_cache(self) -> None:
        """Replace the in-memory map and the cached map with a full rebuild; caller holds the lock."""
        config = self._build_config()
        with self._guard:
            self._config = config
        if self.cache_enabled:
            self.cache.forever(CACHE_KEY, config)
        self.logger.info(
            "Full configuration cache refreshed",
            param("count", len(config)),
            category(Category.CACHE),
        )

    def _refresh_key(self, key: str) -> None:
        """Merge one key into the cached map; caller holds the lock."""
        cached = self.cache.get(CACHE_KEY, _MISSING) if self.cache_enabled else {}
        if cached is _MISSING:
            # Expired or evicted: merging into nothing would drop every other key
            self._rebuild_cache()
            return

        cached = dict(cached or {})
        entry = self.dao.get_config_by_key(key)

        if entry is not None and not entry.is_deleted and entry.value is not None:
            item = entry.to_cache_item()
            cached[key] = item
            with self._guard:
                self._config[key] = copy.deepcopy(item)
        else:
            cached.pop(key, None)
            with self._guard:
                self._config.pop(key, None)

        if self.cache_enabled:
            self.cache.forever(CACHE_KEY, cached)

    def _refresh_after_write(self, key: str) -> None:
        """Refresh after a committed write; refresh failures do not undo the write."""
        try:
            self.refresh_cache(key)
        except (CacheUnavailableError, ConfigError) as e:
            self.logger.warn(
                "Cache refresh skipped after committed write",
                param("key", key),
                param("error", str(e)),
            )

    def reload(self) -> None:
        """Rebuild the in-memory map from database and env, bypassing the cache."""
        config = self._build_config()
        with self._guard:
            self._config = config
        self.logger.info("Configurations reloaded from database", param("count", len(config)))

    # History

    def history(self, key: str) -> ConfigHistory:
        """
        Return an entry with its versions and audit trail.

        Raises:
            ConfigNotFoundError: If no entry exists for the key
        """
        self._validate_key(key)
        entry = self.dao.get_config_by_key(key)
        if entry is None:
            raise ConfigNotFoundError(f"Configuration not found: {key}", key=key)
        return ConfigHistory(
            entry=entry,
            versions=self.dao.get_versions(entry.id),
            audits=self.dao.get_audits_by_config_id(entry.id),
        )

    # Helpers

    def _validate_key(self, key: Any, operation: str = "configuration") -> None:
        if not is_valid_key(key):
            self.logger.error(
                f"Invalid configuration key for {operation}: {key}",
                None,
                param("key", key),
            )
            raise InvalidInputError(
                "Configuration key must be alphanumeric with allowed characters: _ . -",
                key=key,
            )

    def _restore_item(self, key: str, previous: dict[str, Any] | None) -> None:
        """Undo an in-memory change after the database write failed."""
        with self._guard:
            if previous is None:
                self._config.pop(key, None)
            else:
                self._config[key] = previous

    def _resolve_user_id(self, user: Any) -> int:
        """
        Explicit user, else the actor provider, else NO_USER.

        Raises:
            InvalidInputError: If the user id is not an integer
        """
        if user is None:
            user = self.actor.current_user_id()
        user_id = getattr(user, "id", user)
        if user_id is None:
            return NO_USER
        if isinstance(user_id, bool):
            raise InvalidInputError("User id must be an integer", user=user_id)
        try:
            return int(user_id)
        except (TypeError, ValueError) as e:
            raise InvalidInputError("User id must be an integer", user=user_id) from e
