"""Configuration DAO for PostgreSQL."""

from typing import Any

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import RealDictCursor

from uconfig.database.postgres import PostgresClient
from uconfig.database.schema import AUDIT_TABLE, CONFIG_TABLE, VERSIONS_TABLE
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
from uconfig.domain.errors import (
    DuplicateKeyError,
    InvalidInputError,
    PersistenceError,
)
from uconfig.logger.logger import get_logger
from uconfig.logger.types import Category, param
from uconfig.security.codec import ValueCodec

ENTRY_COLUMNS = "id, key, value, category, note, state, deleted_at, created_at, updated_at"
VERSION_COLUMNS = "id, uconfig_id, version, key, category, note, value, created_at"
AUDIT_COLUMNS = "id, uconfig_id, action, old_value, new_value, user_id, created_at"

UPDATABLE_FIELDS = ("value", "category", "note")


def parse_category(value: Any) -> ConfigCategory:
    """Category from user input, as InvalidInputError on bad names."""
    try:
        return ConfigCategory.parse(value)
    except ValueError as e:
        raise InvalidInputError(
            f"Invalid category: {value!r}. Valid options are: {ConfigCategory.options()}",
            category=value,
        ) from e


def parse_action(value: AuditAction | str) -> AuditAction:
    """Audit action from user input, as InvalidInputError on bad names."""
    try:
        return AuditAction(value)
    except ValueError as e:
        raise InvalidInputError(
            "Audit action must be 'created', 'updated', or 'deleted'",
            action=value,
        ) from e


def check_key_unchanged(entry: ConfigEntry, data: dict[str, Any]) -> None:
    """Reject payloads that would rename an existing entry."""
    if "key" in data and data["key"] != entry.key:
        raise InvalidInputError(
            "Configuration key cannot be modified after creation",
            key=entry.key,
            new_key=data["key"],
        )


class PostgresConfigDao:
    """ConfigDao over psycopg2; values are encrypted with the codec on write."""

    def __init__(self, postgres_client: PostgresClient, codec: ValueCodec) -> None:
        """
        Initialize PostgresConfigDao.

        Args:
            postgres_client: PostgreSQL client instance
            codec: Codec applied to every stored value
        """
        self.postgres = postgres_client
        self.codec = codec
        self.logger = get_logger().with_category(Category.DATABASE)

    # Entries

    def get_all_configs(self) -> list[ConfigEntry]:
        """
        Get all active configuration entries.

        Returns:
            List of ConfigEntry ordered by key
        """
        rows = self._fetch_all(
            "get_all_configs",
            f"""
            SELECT {ENTRY_COLUMNS}
            FROM {CONFIG_TABLE}
            WHERE state = %s
            ORDER BY key
            """,
            (EntryState.ACTIVE.value,),
        )
        return [self._row_to_entry(row) for row in rows]

    def get_config_by_id(self, config_id: int) -> ConfigEntry | None:
        """
        Get configuration entry by id.

        Args:
            config_id: Entry id

        Returns:
            ConfigEntry (possibly soft-deleted) or None if not found
        """
        row = self._fetch_one(
            "get_config_by_id",
            f"SELECT {ENTRY_COLUMNS} FROM {CONFIG_TABLE} WHERE id = %s",
            (config_id,),
        )
        return self._row_to_entry(row) if row else None

    def get_config_by_key(self, key: str) -> ConfigEntry | None:
        """
        Get configuration entry by key.

        Args:
            key: Configuration key

        Returns:
            ConfigEntry (possibly soft-deleted) or None if not found

        Raises:
            InvalidInputError: If key is empty
        """
        if not key or not isinstance(key, str):
            raise InvalidInputError("Invalid or missing key", key=key)

        row = self._fetch_one(
            "get_config_by_key",
            f"SELECT {ENTRY_COLUMNS} FROM {CONFIG_TABLE} WHERE key = %s",
            (key,),
        )
        if row is None:
            return None

        self.logger.debug("Retrieved configuration", param("key", key))
        return self._row_to_entry(row)

    def create_config(self, data: dict[str, Any]) -> ConfigEntry:
        """
        Insert a new configuration entry.

        Args:
            data: Payload with key, value and optional category, note

        Returns:
            Created ConfigEntry

        Raises:
            InvalidInputError: If the key is missing or malformed
            DuplicateKeyError: If the key already exists
            PersistenceError: On any other database failure
        """
        key = data.get("key")
        if not is_valid_key(key):
            raise InvalidInputError(
                "Configuration key must be alphanumeric with allowed characters: _ . -",
                key=key,
            )
        category = parse_category(data.get("category"))

        try:
            with self.postgres.transaction() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        f"""
                        INSERT INTO {CONFIG_TABLE} (key, value, category, note, state)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING {ENTRY_COLUMNS}
                        """,
                        (
                            key,
                            self.codec.encode(data.get("value")),
                            category.value,
                            data.get("note"),
                            EntryState.ACTIVE.value,
                        ),
                    )
                    row = cur.fetchone()

        except pg_errors.UniqueViolation as e:
            self.logger.warn("Duplicate configuration key", param("key", key))
            raise DuplicateKeyError(
                f"Configuration with key '{key}' already exists", key=key
            ) from e
        except psycopg2.Error as e:
            self.logger.error(
                "Failed to create configuration", e, param("key", key)
            )
            raise PersistenceError(
                f"Failed to create configuration {key}: {e}",
                key=key,
                operation="create_config",
            ) from e

        entry = self._row_to_entry(row)
        self.logger.info(
            "Created configuration",
            param("key", key),
            param("config_id", entry.id),
        )
        return entry

    def update_config(self, entry: ConfigEntry, data: dict[str, Any]) -> ConfigEntry:
        """
        Update value, category and/or note of an entry.

        Args:
            entry: Entry to update
            data: Fields to change; "key" may be present only if unchanged

        Returns:
            Updated ConfigEntry

        Raises:
            InvalidInputError: On an attempt to change the key or a bad category
            PersistenceError: On database failure
        """
        check_key_unchanged(entry, data)

        assignments: list[str] = []
        values: list[Any] = []
        for name in UPDATABLE_FIELDS:
            if name not in data:
                continue
            if name == "value":
                values.append(self.codec.encode(data["value"]))
            elif name == "category":
                values.append(parse_category(data["category"]).value)
            else:
                values.append(data[name])
            assignments.append(f"{name} = %s")
        assignments.append("updated_at = NOW()")
        values.append(entry.id)

        row = self._write_returning(
            "update_config",
            entry.key,
            f"""
            UPDATE {CONFIG_TABLE}
            SET {", ".join(assignments)}
            WHERE id = %s
            RETURNING {ENTRY_COLUMNS}
            """,
            tuple(values),
        )
        self.logger.info("Updated configuration", param("key", entry.key))
        return self._row_to_entry(row)

    def restore_config(self, entry: ConfigEntry) -> ConfigEntry:
        """
        Restore a soft-deleted entry.

        Args:
            entry: Entry to restore

        Returns:
            Active ConfigEntry
        """
        row = self._write_returning(
            "restore_config",
            entry.key,
            f"""
            UPDATE {CONFIG_TABLE}
            SET state = %s, deleted_at = NULL, updated_at = NOW()
            WHERE id = %s
            RETURNING {ENTRY_COLUMNS}
            """,
            (EntryState.ACTIVE.value, entry.id),
        )
        self.logger.info("Restored configuration", param("key", entry.key))
        return self._row_to_entry(row)

    def delete_config(
        self, entry: ConfigEntry, user_id: int = NO_USER, record_audit: bool = True
    ) -> None:
        """
        Soft-delete an entry and record the 'deleted' audit row atomically.

        Args:
            entry: Entry to delete
            user_id: Actor recorded on the audit row
            record_audit: Skip the audit row when False
        """
        try:
            with self.postgres.transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        UPDATE {CONFIG_TABLE}
                        SET state = %s, deleted_at = NOW(), updated_at = NOW()
                        WHERE id = %s
                        """,
                        (EntryState.DELETED.value, entry.id),
                    )
                    if record_audit:
                        cur.execute(
                            f"""
                            INSERT INTO {AUDIT_TABLE}
                                (uconfig_id, action, old_value, new_value, user_id)
                            VALUES (%s, %s, %s, %s, %s)
                            """,
                            (
                                entry.id,
                                AuditAction.DELETED.value,
                                self.codec.encode(entry.value),
                                None,
                                user_id,
                            ),
                        )

        except psycopg2.Error as e:
            self.logger.error(
                "Failed to delete configuration", e, param("key", entry.key)
            )
            raise PersistenceError(
                f"Failed to delete configuration {entry.key}: {e}",
                key=entry.key,
                operation="delete_config",
            ) from e

        self.logger.info(
            "Deleted configuration",
            param("key", entry.key),
            param("user_id", user_id),
        )

    # Versions

    def create_version(self, entry: ConfigEntry, version: int) -> ConfigVersion:
        """
        Record a version snapshot of the entry.

        Args:
            entry: Entry to snapshot
            version: Version number to assign

        Returns:
            Created ConfigVersion
        """
        row = self._write_returning(
            "create_version",
            entry.key,
            f"""
            INSERT INTO {VERSIONS_TABLE}
                (uconfig_id, version, key, category, note, value)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {VERSION_COLUMNS}
            """,
            (
                entry.id,
                version,
                entry.key,
                entry.category.value,
                entry.note,
                self.codec.encode(entry.value),
            ),
        )
        self.logger.info(
            "Created version",
            param("key", entry.key),
            param("version", version),
        )
        return self._row_to_version(row)

    def get_latest_version(self, config_id: int) -> int:
        """
        Get the highest version number of an entry.

        Args:
            config_id: Entry id

        Returns:
            Latest version, 0 when no version exists
        """
        row = self._fetch_one(
            "get_latest_version",
            f"""
            SELECT COALESCE(MAX(version), 0) AS latest
            FROM {VERSIONS_TABLE}
            WHERE uconfig_id = %s
            """,
            (config_id,),
        )
        return int(row["latest"]) if row else 0

    def get_versions(self, config_id: int) -> list[ConfigVersion]:
        """All versions of an entry, oldest first."""
        rows = self._fetch_all(
            "get_versions",
            f"""
            SELECT {VERSION_COLUMNS}
            FROM {VERSIONS_TABLE}
            WHERE uconfig_id = %s
            ORDER BY version
            """,
            (config_id,),
        )
        return [self._row_to_version(row) for row in rows]

    # Audits

    def create_audit(
        self,
        config_id: int,
        action: AuditAction | str,
        old_value: Any,
        new_value: Any,
        user_id: int | None,
    ) -> ConfigAudit:
        """
        Append an audit row.

        Args:
            config_id: Entry id
            action: created, updated or deleted
            old_value: Value before the change
            new_value: Value after the change
            user_id: Actor id, or None

        Returns:
            Created ConfigAudit

        Raises:
            InvalidInputError: If action is not one of the three allowed values
        """
        audit_action = parse_action(action)

        row = self._write_returning(
            "create_audit",
            str(config_id),
            f"""
            INSERT INTO {AUDIT_TABLE}
                (uconfig_id, action, old_value, new_value, user_id)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {AUDIT_COLUMNS}
            """,
            (
                config_id,
                audit_action.value,
                self.codec.encode(old_value),
                self.codec.encode(new_value),
                user_id,
            ),
        )
        self.logger.info(
            "Created audit entry",
            param("config_id", config_id),
            param("action", audit_action.value),
        )
        return self._row_to_audit(row)

    def get_audits_by_config_id(self, config_id: int) -> list[ConfigAudit]:
        """Audit rows of an entry in insertion order."""
        rows = self._fetch_all(
            "get_audits_by_config_id",
            f"""
            SELECT {AUDIT_COLUMNS}
            FROM {AUDIT_TABLE}
            WHERE uconfig_id = %s
            ORDER BY id
            """,
            (config_id,),
        )
        return [self._row_to_audit(row) for row in rows]

    # Helpers

    def _fetch_one(
        self, operation: str, query: str, params: tuple[Any, ...]
    ) -> dict[str, Any] | None:
        return self._read(operation, query, params, many=False)

    def _fetch_all(
        self, operation: str, query: str, params: tuple[Any, ...]
    ) -> list[dict[str, Any]]:
        return self._read(operation, query, params, many=True)

    def _read(self, operation: str, query: str, params: tuple[Any, ...], many: bool) -> Any:
        try:
            with self.postgres.snapshot() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, params)
                    return cur.fetchall() if many else cur.fetchone()
        except psycopg2.Error as e:
            self.logger.error(
                f"Query failed: {operation}", e, param("operation", operation)
            )
            raise PersistenceError(
                f"Query failed: {operation}: {e}", operation=operation
            ) from e

    def _write_returning(
        self, operation: str, key: str, query: str, params: tuple[Any, ...]
    ) -> dict[str, Any]:
        try:
            with self.postgres.transaction() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, params)
                    row = cur.fetchone()
        except psycopg2.Error as e:
            self.logger.error(
                f"Write failed: {operation}",
                e,
                param("operation", operation),
                param("key", key),
            )
            raise PersistenceError(
                f"Write failed: {operation} for {key}: {e}",
                key=key,
                operation=operation,
            ) from e

        if row is None:
            raise PersistenceError(
                f"Write affected no rows: {operation} for {key}",
                key=key,
                operation=operation,
            )
        return row

    def _row_to_entry(self, row: dict[str, Any]) -> ConfigEntry:
        return ConfigEntry(
            id=row["id"],
            key=row["key"],
            value=self.codec.decode(row["value"]),
            category=ConfigCategory.parse(row["category"]),
            note=row["note"],
            state=EntryState(row["state"]),
            deleted_at=row["deleted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_version(self, row: dict[str, Any]) -> ConfigVersion:
        return ConfigVersion(
            id=row["id"],
            config_id=row["uconfig_id"],
            version=row["version"],
            key=row["key"],
            category=ConfigCategory.parse(row["category"]),
            note=row["note"],
            value=self.codec.decode(row["value"]),
            created_at=row["created_at"],
        )

    def _row_to_audit(self, row: dict[str, Any]) -> ConfigAudit:
        return ConfigAudit(
            id=row["id"],
            config_id=row["uconfig_id"],
            action=AuditAction(row["action"]),
            old_value=self.codec.decode(row["old_value"]),
            new_value=self.codec.decode(row["new_value"]),
            user_id=row["user_id"],
            created_at=row["created_at"],
        )
