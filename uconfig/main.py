"""
uconfig - versioned, audited, cached configuration service.

Wires settings, logging, PostgreSQL, the cache store and the configuration
manager together, and exposes them as the ``uconfig`` command line tool.
"""

import json
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, NoReturn

import click

from uconfig.cache.redis_store import RedisCacheStore, connect_redis
from uconfig.cache.store import CacheStore, CacheUnavailableError, MemoryCacheStore
from uconfig.config.settings import Settings
from uconfig.database.postgres import PostgresClient
from uconfig.database.schema import CONFIG_TABLE, PostgresSchemaInspector, create_schema
from uconfig.domain.config import Category as ConfigCategory
from uconfig.domain.errors import ConfigError
from uconfig.logger.logger import get_logger, init_logger
from uconfig.logger.postgres_writer import PostgresWriter
from uconfig.logger.types import Category, param
from uconfig.repository.postgres_config_dao import PostgresConfigDao
from uconfig.security.codec import ValueCodec
from uconfig.services.config_manager import ConfigManager
from uconfig.services.identity import StaticActorProvider

INITIAL_MESSAGE_KEY = "initial_publication_message"


@dataclass
class Runtime:
    """Live resources behind one CLI invocation."""

    settings: Settings
    postgres: PostgresClient
    manager: ConfigManager


def setup_logging(settings: Settings) -> PostgresWriter | None:
    """Initialize the global logger, writing to PostgreSQL when enabled."""
    writer = None
    if settings.log_to_db:
        writer = PostgresWriter(dsn=settings.postgres.dsn, batch_size=100, flush_interval=5.0)
        writer.connect()
    init_logger(
        service_name=settings.service_name,
        environment=settings.environment,
        writer=writer,
        min_level=settings.log_level,
    )
    return writer


def build_cache(settings: Settings) -> CacheStore:
    """Cache store selected by UCONFIG_CACHE_DRIVER."""
    if settings.cache.driver == "memory":
        return MemoryCacheStore()
    if settings.cache.driver != "redis":
        raise click.UsageError(f"Unknown cache driver: {settings.cache.driver}")
    return RedisCacheStore(connect_redis(settings.redis))


def build_manager(
    settings: Settings,
    postgres: PostgresClient,
    cache: CacheStore,
    user_id: int | None = None,
) -> ConfigManager:
    """Assemble a ConfigManager over PostgreSQL and the given cache store."""
    if not settings.encryption.is_configured:
        raise click.UsageError("UCONFIG_ENCRYPTION_KEY is not set")

    dao = PostgresConfigDao(postgres, ValueCodec(settings.encryption.key or ""))
    return ConfigManager(
        dao=dao,
        cache=cache,
        schema=PostgresSchemaInspector(postgres),
        actor=StaticActorProvider(user_id),
        cache_enabled=settings.cache.enabled,
        cache_ttl=settings.cache.ttl,
        lock_timeout=settings.cache.lock_timeout,
        lock_wait=settings.cache.lock_wait,
    )


@contextmanager
def runtime(user_id: int | None = None) -> Generator[Runtime, None, None]:
    """Open every resource a command needs and close them afterwards."""
    settings = Settings()
    log_writer = setup_logging(settings)
    postgres = PostgresClient(settings.postgres)
    postgres.connect()
    try:
        manager = build_manager(settings, postgres, build_cache(settings), user_id)
        yield Runtime(settings, postgres, manager)
    finally:
        postgres.close()
        if log_writer:
            log_writer.close()


def _parse_value(raw: str, as_json: bool) -> Any:
    if not as_json:
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="VALUE") from e


def _echo_value(value: Any) -> None:
    if isinstance(value, str):
        click.echo(value)
    else:
        click.echo(json.dumps(value, ensure_ascii=False))


def _fail(err: ConfigError) -> NoReturn:
    click.echo(f"Error [{err.kind.value}]: {err.message}", err=True)
    raise SystemExit(1)


@click.group()
@click.version_option(package_name="uconfig")
def cli() -> None:
    """Manage versioned, audited application configuration."""


@cli.command()
def migrate() -> None:
    """Create the configuration tables."""
    settings = Settings()
    log_writer = setup_logging(settings)
    postgres = PostgresClient(settings.postgres)
    postgres.connect()
    try:
        create_schema(postgres)
        click.echo("Configuration tables are ready.")
    finally:
        postgres.close()
        if log_writer:
            log_writer.close()


@cli.command()
def initialize() -> None:
    """Initial setup and registration of the service in the database."""
    with runtime() as rt:
        if not rt.manager.schema.has_table(CONFIG_TABLE):
            click.echo(f"Table '{CONFIG_TABLE}' not found. Run 'uconfig migrate' first.", err=True)
            raise SystemExit(1)

        logger = get_logger().with_category(Category.CLI)
        try:
            shown = rt.manager.get(INITIAL_MESSAGE_KEY, None)
            if shown in (None, 0, "0"):
                rt.manager.set(INITIAL_MESSAGE_KEY, "0", ConfigCategory.SYSTEM)
                click.echo("Configuration service registered. Read values with 'uconfig get KEY'.")
                rt.manager.set(INITIAL_MESSAGE_KEY, "1", ConfigCategory.SYSTEM)
                logger.info("Initial publication message displayed")
        except ConfigError as e:
            logger.error("Initialization failed", e)
            click.echo(f"Failed to initialize: {e.message}", err=True)
            raise SystemExit(1) from e

        click.echo("Initialization complete.")


@cli.command("get")
@click.argument("key")
@click.option("--default", "default", default=None, help="Printed when the key is missing.")
def get_command(key: str, default: str | None) -> None:
    """Print the value of KEY."""
    with runtime() as rt:
        value = rt.manager.get(key, default)
        if value is None:
            click.echo(f"Key not found: {key}", err=True)
            raise SystemExit(1)
        _echo_value(value)


@cli.command("set")
@click.argument("key")
@click.argument("value")
@click.option(
    "--category",
    type=click.Choice(ConfigCategory.options() + ["none"]),
    default=None,
    help="Category tag.",
)
@click.option("--user", "user_id", type=int, default=None, help="Acting user id for the audit log.")
@click.option("--json", "as_json", is_flag=True, help="Parse VALUE as JSON.")
@click.option("--no-version", is_flag=True, help="Do not record a version.")
@click.option("--no-audit", is_flag=True, help="Do not record an audit entry.")
def set_command(
    key: str,
    value: str,
    category: str | None,
    user_id: int | None,
    as_json: bool,
    no_version: bool,
    no_audit: bool,
) -> None:
    """Create or update KEY with VALUE."""
    parsed = _parse_value(value, as_json)
    with runtime(user_id) as rt:
        try:
            entry = rt.manager.set(
                key,
                parsed,
                category,
                record_version=not no_version,
                record_audit=not no_audit,
            )
        except ConfigError as e:
            _fail(e)
        click.echo(f"Saved {entry.key} (id={entry.id}).")


@cli.command("delete")
@click.argument("key")
@click.option("--user", "user_id", type=int, default=None, help="Acting user id for the audit log.")
@click.option("--no-version", is_flag=True, help="Do not record a version.")
@click.option("--no-audit", is_flag=True, help="Do not record an audit entry.")
def delete_command(key: str, user_id: int | None, no_version: bool, no_audit: bool) -> None:
    """Soft-delete KEY."""
    with runtime(user_id) as rt:
        try:
            rt.manager.delete(key, record_version=not no_version, record_audit=not no_audit)
        except ConfigError as e:
            _fail(e)
        click.echo(f"Deleted {key}.")


@cli.command("list")
def list_command() -> None:
    """List configuration entries stored in the database."""
    with runtime() as rt:
        for entry in rt.manager.dao.get_all_configs():
            category = entry.category.value or "-"
            click.echo(f"{entry.key}\t{category}\t{json.dumps(entry.value, ensure_ascii=False)}")


@cli.command("history")
@click.argument("key")
def history_command(key: str) -> None:
    """Show versions and audit trail of KEY."""
    with runtime() as rt:
        try:
            history = rt.manager.history(key)
        except ConfigError as e:
            _fail(e)

        entry = history.entry
        click.echo(f"{entry.key} (id={entry.id}, state={entry.state.value})")
        click.echo("Versions:")
        for version in history.versions:
            click.echo(
                f"  v{version.version}\t{version.created_at:%Y-%m-%d %H:%M:%S}\t"
                f"{json.dumps(version.value, ensure_ascii=False)}"
            )
        click.echo("Audit:")
        for audit in history.audits:
            click.echo(
                f"  {audit.created_at:%Y-%m-%d %H:%M:%S}\t{audit.action.value}\t"
                f"user={audit.user_id}\t"
                f"{json.dumps(audit.old_value, ensure_ascii=False)} -> "
                f"{json.dumps(audit.new_value, ensure_ascii=False)}"
            )


@cli.command("refresh")
@click.argument("key", required=False)
def refresh_command(key: str | None) -> None:
    """Refresh the shared cache for KEY, or entirely."""
    with runtime() as rt:
        try:
            rt.manager.refresh_cache(key)
        except CacheUnavailableError as e:
            click.echo(f"Cache unavailable: {e}", err=True)
            raise SystemExit(1) from e
        except ConfigError as e:
            _fail(e)
        get_logger().with_category(Category.CLI).info(
            "Cache refreshed from CLI", param("key", key)
        )
        click.echo("Cache refreshed.")


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
