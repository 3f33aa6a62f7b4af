"""
Query Executor

Runs an ExecutionPlan against the reporting database with a hard statement
timeout and a row cap. Rows are streamed: once the cap is reached the rest
of the cursor is still walked so the reported total is the true match count.
"""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool

from access_rewriter import ExecutionPlan, referenced_parameters
from config import build_database_url
from request_context import RequestCancelledError, raise_if_cancelled

logger = logging.getLogger("nlq_gateway.sql_executor")

# sqlite progress handler granularity, in virtual machine instructions
_SQLITE_PROGRESS_STEPS = 1000


# --------------------------
# Structured Exceptions
# --------------------------
class DatabaseExecutionError(Exception):
    def __init__(self, message: str, sql: str):
        super().__init__(message)
        self.message = message
        self.sql = sql


class QueryTimeoutError(DatabaseExecutionError):
    def __init__(self, timeout_seconds: float, sql: str, message: Optional[str] = None):
        super().__init__(message or f"Query exceeded timeout of {timeout_seconds} seconds", sql)
        self.timeout_seconds = timeout_seconds


@dataclass
class ResultSet:
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)
    total_row_count: int = 0
    was_truncated: bool = False
    elapsed_ms: float = 0.0


def get_db_engine(db_cfg: dict):
    """Create and return a database engine with connection pooling using config."""
    url = build_database_url(db_cfg)
    if str(url).startswith("sqlite"):
        return create_engine(url)
    pool_cfg = db_cfg.get("pool", {})
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=int(pool_cfg.get("pool_size", 5)),
        max_overflow=int(pool_cfg.get("max_overflow", 10)),
        pool_timeout=int(pool_cfg.get("pool_timeout", 30)),
        pool_recycle=int(pool_cfg.get("pool_recycle", 3600)),
        pool_pre_ping=True,
    )


def _normalize_db_value(value):
    """Keep values JSON-friendly; engine NULL stays None."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


class _StatementDeadline:
    """Applies and clears a driver-level statement timeout on one connection."""

    def __init__(self, conn, timeout_seconds: float, cancel_event: Optional[threading.Event]):
        self.conn = conn
        self.timeout_seconds = timeout_seconds
        self.cancel_event = cancel_event
        self.deadline = time.monotonic() + timeout_seconds
        self.dialect = conn.dialect.name
        self._driver_conn = conn.connection.driver_connection

    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _sqlite_progress(self) -> int:
        # Non-zero aborts the running statement with "interrupted".
        return 1 if (self.expired() or self.cancelled()) else 0

    def __enter__(self):
        millis = max(1, int(self.timeout_seconds * 1000))
        if self.dialect == "sqlite" and isinstance(self._driver_conn, sqlite3.Connection):
            self._driver_conn.set_progress_handler(self._sqlite_progress, _SQLITE_PROGRESS_STEPS)
        elif self.dialect == "mssql" and hasattr(self._driver_conn, "timeout"):
            self._driver_conn.timeout = max(1, int(round(self.timeout_seconds)))
        elif self.dialect == "postgresql":
            self.conn.exec_driver_sql(f"SET statement_timeout = {millis}")
        elif self.dialect in ("mysql", "mariadb"):
            self.conn.exec_driver_sql(f"SET SESSION MAX_EXECUTION_TIME = {millis}")
        else:
            logger.warning("No driver timeout support for dialect %s; relying on deadline checks", self.dialect)
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if self.dialect == "sqlite" and isinstance(self._driver_conn, sqlite3.Connection):
                self._driver_conn.set_progress_handler(None, 0)
            elif self.dialect == "mssql" and hasattr(self._driver_conn, "timeout"):
                self._driver_conn.timeout = 0
            elif self.dialect == "postgresql" and exc_type is None:
                self.conn.exec_driver_sql("SET statement_timeout = 0")
            elif self.dialect in ("mysql", "mariadb") and exc_type is None:
                self.conn.exec_driver_sql("SET SESSION MAX_EXECUTION_TIME = 0")
        except SQLAlchemyError as e:
            logger.warning("Failed to reset statement timeout: %s", e)
        return False


class QueryExecutor:
    """Executes rewritten plans under row and time bounds."""

    def __init__(self, engine):
        self.engine = engine

    def execute(
        self,
        plan: ExecutionPlan,
        timeout_seconds: float,
        max_rows: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> ResultSet:
        """
        Execute a plan and return a ResultSet.

        Parameters:
        - plan: rewritten SQL plus its bound parameters.
        - timeout_seconds: hard statement timeout enforced through the driver.
        - max_rows: number of rows to buffer; the remainder is only counted.
        - cancel_event: when set, the statement is abandoned as soon as observed.

        Raises:
        - QueryTimeoutError: the deadline passed before the cursor was drained.
        - RequestCancelledError: the caller cancelled the request.
        - DatabaseExecutionError: any other db/driver error.
        """
        raise_if_cancelled(cancel_event, plan.sql)
        started = time.perf_counter()
        referenced = set(referenced_parameters(plan.sql))
        params = {k: v for k, v in plan.parameters.items() if k in referenced}

        columns: List[str] = []
        rows: List[Dict[str, Any]] = []
        total = 0
        guard = None

        try:
            with self.engine.connect() as conn:
                with _StatementDeadline(conn, timeout_seconds, cancel_event) as guard:
                    result = conn.execution_options(stream_results=True).execute(text(plan.sql), params)
                    columns = list(result.keys())

                    for row in result:
                        if guard.cancelled():
                            raise RequestCancelledError(sql=plan.sql)
                        if guard.expired():
                            raise QueryTimeoutError(timeout_seconds, plan.sql)
                        total += 1
                        if len(rows) < max_rows:
                            rows.append({col: _normalize_db_value(val) for col, val in zip(columns, row)})
                    result.close()
        except (RequestCancelledError, QueryTimeoutError):
            raise
        except Exception as e:
            if guard is not None and guard.cancelled():
                raise RequestCancelledError(sql=plan.sql) from e
            if guard is not None and guard.expired():
                raise QueryTimeoutError(timeout_seconds, plan.sql) from e
            # Wrap any db/driver error into a structured exception for the pipeline
            raise DatabaseExecutionError(str(e), plan.sql) from e

        elapsed_ms = (time.perf_counter() - started) * 1000
        truncated = total > max_rows
        if truncated:
            logger.info("Result truncated: %d of %d rows buffered", len(rows), total)

        return ResultSet(
            columns=columns,
            rows=rows,
            total_row_count=total,
            was_truncated=truncated,
            elapsed_ms=elapsed_ms,
        )
