"""PostgreSQL connection pool for the uconfig service."""

from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass

from psycopg2.extensions import connection as Connection
from psycopg2.extensions import make_dsn
from psycopg2.pool import ThreadedConnectionPool

APPLICATION_NAME = "uconfig"


@dataclass
class PostgresConfig:
    """Connection parameters; see Settings for how they are read from the environment."""

    host: str = "localhost"
    port: int = 5432
    database: str = "uconfig"
    user: str = "uconfig"
    password: str = ""
    min_conn: int = 1
    max_conn: int = 10
    connect_timeout: int = 5

    @property
    def dsn(self) -> str:
        return make_dsn(
            host=self.host,
            port=self.port,
            dbname=self.database,
            user=self.user,
            password=self.password,
            connect_timeout=self.connect_timeout,
            application_name=APPLICATION_NAME,
        )


class PostgresClient:
    """
    Thread-safe pool of psycopg2 connections.

    Writers borrow a connection through ``transaction()``; readers through
    ``snapshot()``, which always ends with a rollback so no idle transaction
    is left open on a pooled connection.
    """

    def __init__(self, config: PostgresConfig) -> None:
        self.config = config
        self.pool: ThreadedConnectionPool | None = None

    def connect(self) -> None:
        """Create the connection pool."""
        try:
            self.pool = ThreadedConnectionPool(
                minconn=self.config.min_conn,
                maxconn=self.config.max_conn,
                dsn=self.config.dsn,
            )
        except Exception as e:
            raise ConnectionError(
                f"Failed to connect to PostgreSQL at {self.config.host}:{self.config.port}: {e}"
            ) from e

    def close(self) -> None:
        if self.pool:
            self.pool.closeall()
            self.pool = None

    def get_connection(self) -> Connection:
        if not self.pool:
            raise RuntimeError("Connection pool not initialized. Call connect() first.")
        return self.pool.getconn()  # type: ignore[no-any-return]

    def put_connection(self, conn: Connection) -> None:
        if self.pool:
            self.pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Generator[Connection, None, None]:
        """Commit when the block exits normally, roll back and re-raise otherwise."""
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.put_connection(conn)

    @contextmanager
    def snapshot(self) -> Generator[Connection, None, None]:
        """Borrow a connection for reads."""
        conn = self.get_connection()
        try:
            yield conn
        finally:
            conn.rollback()
            self.put_connection(conn)
