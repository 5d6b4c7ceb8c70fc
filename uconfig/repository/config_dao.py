"""Persistence contract for configuration entries, versions and audits."""

from typing import Any, Protocol

from uconfig.domain.config import AuditAction, ConfigAudit, ConfigEntry, ConfigVersion
from uconfig.domain.constants import NO_USER


class ConfigDao(Protocol):
    """
    Storage operations used by the configuration manager.

    Lookups return None when nothing matches. Every mutating operation is
    atomic on its own; nothing spans several calls.
    """

    def get_all_configs(self) -> list[ConfigEntry]:
        """All non-deleted entries, ordered by key."""
        ...

    def get_config_by_id(self, config_id: int) -> ConfigEntry | None:
        """Entry by id, including soft-deleted ones."""
        ...

    def get_config_by_key(self, key: str) -> ConfigEntry | None:
        """Entry by key, including soft-deleted ones."""
        ...

    def create_config(self, data: dict[str, Any]) -> ConfigEntry:
        """Insert an entry; raises DuplicateKeyError on key collision."""
        ...

    def update_config(self, entry: ConfigEntry, data: dict[str, Any]) -> ConfigEntry:
        """Update value/category/note; the key cannot change."""
        ...

    def restore_config(self, entry: ConfigEntry) -> ConfigEntry:
        """Bring a soft-deleted entry back to the active state."""
        ...

    def delete_config(
        self, entry: ConfigEntry, user_id: int = NO_USER, record_audit: bool = True
    ) -> None:
        """Soft-delete an entry together with its 'deleted' audit row."""
        ...

    def create_version(self, entry: ConfigEntry, version: int) -> ConfigVersion:
        """Snapshot the entry's key, category, note and value."""
        ...

    def get_latest_version(self, config_id: int) -> int:
        """Highest version number for the entry, 0 when there is none."""
        ...

    def get_versions(self, config_id: int) -> list[ConfigVersion]:
        """All versions for the entry, oldest first."""
        ...

    def create_audit(
        self,
        config_id: int,
        action: AuditAction | str,
        old_value: Any,
        new_value: Any,
        user_id: int | None,
    ) -> ConfigAudit:
        """Append an audit row."""
        ...

    def get_audits_by_config_id(self, config_id: int) -> list[ConfigAudit]:
        """Audit rows for the entry in insertion order."""
        ...
