"""Structured logging for uconfig."""

from uconfig.logger.logger import Logger, get_logger, init_logger
from uconfig.logger.postgres_writer import PostgresWriter
from uconfig.logger.types import Category, Field, Level, LogEntry, param

__all__ = [
    "Logger",
    "get_logger",
    "init_logger",
    "PostgresWriter",
    "Category",
    "Level",
    "LogEntry",
    "Field",
    "param",
]
