"""Schema for the configuration tables and a table-presence inspector."""

from typing import Protocol

import psycopg2

from uconfig.database.postgres import PostgresClient
from uconfig.logger.logger import get_logger
from uconfig.logger.types import Category, param

CONFIG_TABLE = "uconfig"
VERSIONS_TABLE = "uconfig_versions"
AUDIT_TABLE = "uconfig_audit"

SCHEMA_DDL: tuple[str, ...] = (
    f"""
    CREATE TABLE IF NOT EXISTS {CONFIG_TABLE} (
        id BIGSERIAL PRIMARY KEY,
        key VARCHAR(255) NOT NULL UNIQUE,
        value TEXT,
        category VARCHAR(32) NOT NULL DEFAULT '',
        note TEXT,
        state VARCHAR(16) NOT NULL DEFAULT 'active',
        deleted_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
        CONSTRAINT uconfig_state_check CHECK (state IN ('active', 'deleted'))
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {VERSIONS_TABLE} (
        id BIGSERIAL PRIMARY KEY,
        uconfig_id BIGINT NOT NULL REFERENCES {CONFIG_TABLE}(id) ON DELETE CASCADE,
        version INTEGER NOT NULL CHECK (version >= 1),
        key VARCHAR(255) NOT NULL,
        category VARCHAR(32) NOT NULL DEFAULT '',
        note TEXT,
        value TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        UNIQUE (uconfig_id, version)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {AUDIT_TABLE} (
        id BIGSERIAL PRIMARY KEY,
        uconfig_id BIGINT NOT NULL REFERENCES {CONFIG_TABLE}(id) ON DELETE CASCADE,
        action VARCHAR(16) NOT NULL,
        old_value TEXT,
        new_value TEXT,
        user_id BIGINT,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        CONSTRAINT uconfig_audit_action_check
            CHECK (action IN ('created', 'updated', 'deleted'))
    )
    """,
    f"CREATE INDEX IF NOT EXISTS idx_uconfig_audit_config ON {AUDIT_TABLE} (uconfig_id, id)",
)


class SchemaInspector(Protocol):
    """Answers whether a backing table exists."""

    def has_table(self, name: str) -> bool: ...


class PostgresSchemaInspector:
    """SchemaInspector backed by PostgreSQL's catalog."""

    def __init__(self, postgres_client: PostgresClient) -> None:
        self.postgres = postgres_client
        self.logger = get_logger().with_category(Category.DATABASE)

    def has_table(self, name: str) -> bool:
        """Check if a table is visible on the search path."""
        try:
            with self.postgres.snapshot() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT to_regclass(%s)", (name,))
                    row = cur.fetchone()
        except psycopg2.Error as e:
            self.logger.warn(
                "Failed to inspect schema",
                param("table", name),
                param("error", str(e)),
            )
            return False
        return bool(row and row[0])


def create_schema(postgres_client: PostgresClient) -> None:
    """Create the configuration tables if they do not exist."""
    logger = get_logger().with_category(Category.DATABASE)
    with postgres_client.transaction() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA_DDL:
                cur.execute(statement)

    logger.info(
        "Configuration schema ensured",
        param("tables", [CONFIG_TABLE, VERSIONS_TABLE, AUDIT_TABLE]),
    )
