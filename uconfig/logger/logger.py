"""Structured logger with optional PostgreSQL sink."""

import copy
import inspect
import json
import os
import traceback
import uuid
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from types import FrameType
from typing import Any

from uconfig.logger.postgres_writer import PostgresWriter
from uconfig.logger.types import Category, Field, Level, LogEntry

PACKAGE_ROOT = "uconfig"

_TRACED_LEVELS = (Level.ERROR, Level.FATAL, Level.PANIC)


@lru_cache(maxsize=1)
def _instance_id() -> str:
    # Pod name under Kubernetes, container id under Docker, else per process
    return os.getenv("HOSTNAME") or os.getenv("CONTAINER_ID") or str(uuid.uuid4())


def _relative_path(file_path: str) -> str:
    parts = Path(file_path).parts
    if PACKAGE_ROOT in parts:
        return str(Path(*parts[parts.index(PACKAGE_ROOT):]))
    return Path(file_path).name


def _caller(frame: FrameType | None) -> tuple[str | None, str | None, int | None]:
    """Function, file and line of the code that called a level method."""
    if frame is None:
        return None, None, None
    return frame.f_code.co_name, _relative_path(frame.f_code.co_filename), frame.f_lineno


class Logger:
    """
    Emits structured LogEntry records.

    Loggers are cheap immutable views: the ``with_*`` methods return copies
    carrying extra context, so a component binds its category once and
    keeps the result.
    """

    def __init__(
        self,
        service_name: str,
        environment: str,
        writer: PostgresWriter | None = None,
        min_level: Level = Level.DEBUG,
    ) -> None:
        """
        Initialize Logger.

        Args:
            service_name: Service name stamped on every entry
            environment: Environment (dev, stage, prod, test)
            writer: PostgresWriter sink; stdout is used when None
            min_level: Entries below this level are dropped
        """
        self.service_name = service_name
        self.environment = environment
        self.writer = writer
        self.min_level = min_level
        self.instance_id = _instance_id()
        self.node_name = os.getenv("NODE_NAME")

        self._fields: dict[str, Any] = {}
        self._category: Category | None = None
        self._trace_id: str | None = None
        self._span_id: str | None = None
        self._request_id: str | None = None

    def trace(self, msg: str, *fields: Field) -> None:
        self._log(Level.TRACE, msg, None, fields)

    def debug(self, msg: str, *fields: Field) -> None:
        self._log(Level.DEBUG, msg, None, fields)

    def info(self, msg: str, *fields: Field) -> None:
        self._log(Level.INFO, msg, None, fields)

    def warn(self, msg: str, *fields: Field) -> None:
        self._log(Level.WARN, msg, None, fields)

    def error(self, msg: str, err: Exception | None = None, *fields: Field) -> None:
        self._log(Level.ERROR, msg, err, fields)

    def fatal(self, msg: str, err: Exception | None = None, *fields: Field) -> None:
        """Log and exit the process."""
        self._log(Level.FATAL, msg, err, fields)
        raise SystemExit(1)

    def panic(self, msg: str, err: Exception | None = None, *fields: Field) -> None:
        """Log and raise RuntimeError."""
        self._log(Level.PANIC, msg, err, fields)
        raise RuntimeError(msg)

    def _log(
        self,
        level: Level,
        msg: str,
        err: Exception | None,
        fields: tuple[Field, ...],
    ) -> None:
        if level.severity < self.min_level.severity:
            return

        frame = inspect.currentframe()
        # _log <- level method <- caller
        function_name, file_path, line_number = _caller(
            frame.f_back.f_back if frame and frame.f_back else None
        )

        context = dict(self._fields)
        entry_category = self._category
        for f in fields:
            if f.key == "_category":
                if isinstance(f.value, Category):
                    entry_category = f.value
            else:
                context[f.key] = f.value
        duration = context.pop("duration_ms", None)

        entry = LogEntry(
            timestamp=datetime.utcnow(),
            service_name=self.service_name,
            instance_id=self.instance_id,
            node_name=self.node_name,
            environment=self.environment,
            level=level,
            category=entry_category,
            trace_id=self._trace_id,
            span_id=self._span_id,
            request_id=self._request_id,
            function_name=function_name,
            file_path=file_path,
            line_number=line_number,
            message=msg,
            context=context or None,
            duration_ms=int(duration) if duration is not None else None,
        )
        if err is not None:
            entry.error_message = str(err)
            if level in _TRACED_LEVELS:
                entry.stack_trace = "".join(traceback.format_exception(err))

        self._emit(entry)

    def _emit(self, entry: LogEntry) -> None:
        if self.writer is None:
            print(self._format_line(entry))
            return
        try:
            self.writer.write(entry)
        except Exception as write_err:
            print(f"[LOGGER ERROR] Failed to write log: {write_err}")

    @staticmethod
    def _format_line(entry: LogEntry) -> str:
        cat = entry.category.value if entry.category else "-"
        line = f"[{entry.level.value}] {cat}: {entry.message}"
        if entry.context:
            line += " " + json.dumps(entry.context, default=str)
        if entry.error_message:
            line += f" error={entry.error_message}"
        return line

    # Context

    def _bound(self, **attrs: Any) -> "Logger":
        clone = copy.copy(self)
        clone._fields = dict(self._fields)
        for name, value in attrs.items():
            setattr(clone, name, value)
        return clone

    def with_category(self, category: Category) -> "Logger":
        return self._bound(_category=category)

    def with_trace_id(self, trace_id: str) -> "Logger":
        return self._bound(_trace_id=trace_id)

    def with_span_id(self, span_id: str) -> "Logger":
        return self._bound(_span_id=span_id)

    def with_request_id(self, request_id: str) -> "Logger":
        return self._bound(_request_id=request_id)

    def with_fields(self, *fields: Field) -> "Logger":
        """Copy carrying the fields on every entry."""
        clone = self._bound()
        clone._fields.update((f.key, f.value) for f in fields)
        return clone


_global_logger: Logger | None = None


def get_logger() -> Logger:
    """Return the process-global logger."""
    if _global_logger is None:
        raise RuntimeError("Logger not initialized. Call init_logger() first.")
    return _global_logger


def init_logger(
    service_name: str,
    environment: str,
    writer: PostgresWriter | None = None,
    min_level: Level | str = Level.DEBUG,
) -> Logger:
    """
    Initialize the process-global logger.

    Args:
        service_name: Service name
        environment: Environment (dev, stage, prod, test)
        writer: PostgresWriter for log persistence
        min_level: Minimum level, as a Level or its name

    Returns:
        Logger instance
    """
    global _global_logger
    if isinstance(min_level, str):
        min_level = Level.parse(min_level)
    _global_logger = Logger(service_name, environment, writer, min_level)
    return _global_logger
