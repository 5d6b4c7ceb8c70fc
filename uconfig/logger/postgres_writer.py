"""Batched PostgreSQL sink for log entries."""

import json
import sys
import threading
from collections.abc import Sequence
from typing import Any

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as Connection

from uconfig.logger.types import LogEntry

LOGS_DDL = """
CREATE TABLE IF NOT EXISTS logs (
    id BIGSERIAL PRIMARY KEY,
    timestamp TIMESTAMP NOT NULL,
    service_name TEXT NOT NULL,
    instance_id TEXT NOT NULL,
    node_name TEXT,
    environment TEXT NOT NULL,
    level TEXT NOT NULL,
    category TEXT,
    trace_id TEXT,
    span_id TEXT,
    request_id TEXT,
    function_name TEXT,
    file_path TEXT,
    line_number INTEGER,
    message TEXT NOT NULL,
    error_message TEXT,
    stack_trace TEXT,
    context JSONB,
    duration_ms INTEGER,
    ingestion_time TIMESTAMP NOT NULL
)
"""

LOG_COLUMNS = (
    "timestamp",
    "service_name",
    "instance_id",
    "node_name",
    "environment",
    "level",
    "category",
    "trace_id",
    "span_id",
    "request_id",
    "function_name",
    "file_path",
    "line_number",
    "message",
    "error_message",
    "stack_trace",
    "context",
    "duration_ms",
    "ingestion_time",
)

INSERT_LOGS = f"INSERT INTO logs ({', '.join(LOG_COLUMNS)}) VALUES %s"


def _to_row(entry: LogEntry) -> tuple[Any, ...]:
    """Column values of an entry in LOG_COLUMNS order."""
    row = []
    for column in LOG_COLUMNS:
        value = getattr(entry, column)
        if column in ("level", "category") and value is not None:
            value = value.value
        elif column == "context" and value is not None:
            value = json.dumps(value, default=str)
        row.append(value)
    return tuple(row)


def _to_stderr_line(entry: LogEntry) -> str:
    data: dict[str, Any] = {
        "timestamp": entry.timestamp.isoformat(),
        "level": entry.level.value,
        "category": entry.category.value if entry.category else None,
        "message": entry.message,
        "service_name": entry.service_name,
        "environment": entry.environment,
    }
    if entry.error_message:
        data["error"] = entry.error_message
    if entry.context:
        data["context"] = entry.context
    try:
        return json.dumps(data, default=str)
    except (TypeError, ValueError):
        return f"[{entry.level.value}] {data['category']}: {entry.message}"


class PostgresWriter:
    """
    Buffers log entries and inserts them into PostgreSQL in batches.

    A flush happens when the buffer reaches ``batch_size``, every
    ``flush_interval`` seconds from a daemon thread, and on close. Entries
    that cannot be inserted are written to stderr as JSON lines.
    """

    def __init__(
        self,
        dsn: str,
        batch_size: int = 100,
        flush_interval: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.buffer: list[LogEntry] = []
        self._lock = threading.Lock()
        self._conn: Connection | None = None
        self._stop = threading.Event()
        self._flush_thread: threading.Thread | None = None
        self._closed = False

    def connect(self) -> None:
        """Open the connection, ensure the logs table and start the flush thread."""
        try:
            self._conn = psycopg2.connect(self.dsn)
            with self._conn.cursor() as cursor:
                cursor.execute(LOGS_DDL)
            self._conn.commit()
        except psycopg2.Error as e:
            print(f"[LOGGER ERROR] Failed to connect to PostgreSQL: {e}", file=sys.stderr)
            raise

        self._flush_thread = threading.Thread(
            target=self._run_flush_loop,
            name="uconfig-log-flush",
            daemon=True,
        )
        self._flush_thread.start()

    def write(self, entry: LogEntry) -> None:
        self.write_batch((entry,))

    def write_batch(self, entries: Sequence[LogEntry]) -> None:
        if self._closed:
            return
        with self._lock:
            self.buffer.extend(entries)
            if len(self.buffer) >= self.batch_size:
                self._flush_locked()

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        if not self.buffer:
            return
        pending, self.buffer = self.buffer, []

        if self._conn is None:
            self._dump(pending)
            return
        try:
            with self._conn.cursor() as cursor:
                psycopg2.extras.execute_values(
                    cursor,
                    INSERT_LOGS,
                    [_to_row(entry) for entry in pending],
                    page_size=self.batch_size,
                )
            self._conn.commit()
        except Exception as e:
            print(f"[LOGGER ERROR] Failed to insert logs into PostgreSQL: {e}", file=sys.stderr)
            self._conn.rollback()
            self._dump(pending)

    @staticmethod
    def _dump(entries: Sequence[LogEntry]) -> None:
        for entry in entries:
            print(_to_stderr_line(entry), file=sys.stderr)

    def _run_flush_loop(self) -> None:
        while not self._stop.wait(self.flush_interval):
            try:
                self.flush()
            except Exception as e:
                print(f"[LOGGER ERROR] Background flush failed: {e}", file=sys.stderr)

    def close(self) -> None:
        """Stop the flush thread, flush what is left and close the connection."""
        self._closed = True
        self._stop.set()
        if self._flush_thread:
            self._flush_thread.join(timeout=self.flush_interval)
            self._flush_thread = None

        self.flush()

        if self._conn:
            self._conn.close()
            self._conn = None
