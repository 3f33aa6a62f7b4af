"""
Query Audit Logging Module

Records every concrete query attempt (natural-language question, generated
SQL, outcome, row count, elapsed time) to the ``nlp_query_logs`` table for
later review, and serves a caller's own history back.
"""

import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, Float, Integer, MetaData, String, Table, Text,
    insert, select,
)
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("nlq_gateway.audit_logger")

metadata = MetaData()

nlp_query_logs = Table(
    "nlp_query_logs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("identity_id", String(64), nullable=False, index=True),
    Column("tenant_id", String(64), nullable=False),
    Column("natural_language_query", Text, nullable=False),
    Column("generated_sql", Text, nullable=True),
    Column("success", Boolean, nullable=False),
    Column("error_message", Text, nullable=True),
    Column("result_count", Integer, nullable=False, default=0),
    Column("elapsed_ms", Float, nullable=False, default=0.0),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
)


@dataclass(frozen=True)
class AuditRecord:
    """A single, immutable query attempt."""
    id: str
    identity_id: str
    tenant_id: str
    natural_language_query: str
    generated_sql: Optional[str]
    success: bool
    error_message: Optional[str]
    result_count: int
    elapsed_ms: float
    created_at: datetime

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class AuditLogger:
    """Append-only audit trail backed by a SQLAlchemy engine."""

    def __init__(self, engine, enabled: bool = True):
        """
        Initialize audit logger.

        Args:
            engine: SQLAlchemy engine holding the ``nlp_query_logs`` table
            enabled: When False, ``record`` is a no-op and history is empty
        """
        self.engine = engine
        self.enabled = enabled
        self._table_ready = False

    def _ensure_table(self):
        if not self._table_ready:
            metadata.create_all(self.engine, tables=[nlp_query_logs], checkfirst=True)
            self._table_ready = True

    def record(
        self,
        identity_id: Optional[str],
        tenant_id: str,
        natural_language_query: str,
        generated_sql: Optional[str],
        success: bool,
        error_message: Optional[str],
        result_count: int,
        elapsed_ms: float,
    ) -> Optional[AuditRecord]:
        """
        Append one attempt. Returns the stored record, or None when skipped or
        when the write failed (failures are logged, never raised).
        """
        if not self.enabled or identity_id is None:
            return None

        entry = AuditRecord(
            id=str(uuid.uuid4()),
            identity_id=str(identity_id),
            tenant_id=str(tenant_id),
            natural_language_query=natural_language_query,
            generated_sql=generated_sql,
            success=success,
            error_message=error_message,
            result_count=int(result_count),
            elapsed_ms=float(elapsed_ms),
            created_at=datetime.now(timezone.utc),
        )

        try:
            self._ensure_table()
            with self.engine.begin() as conn:
                conn.execute(insert(nlp_query_logs).values(**asdict(entry)))
        except SQLAlchemyError as e:
            logger.error(f"Failed to write audit log entry: {e}")
            return None
        return entry

    def get_history(self, identity_id: Optional[str], limit: int = 20) -> List[AuditRecord]:
        """Most recent attempts for one identity, newest first."""
        if not self.enabled or identity_id is None:
            return []

        self._ensure_table()
        stmt = (
            select(nlp_query_logs)
            .where(nlp_query_logs.c.identity_id == str(identity_id))
            .order_by(nlp_query_logs.c.created_at.desc())
            .limit(max(1, int(limit)))
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [AuditRecord(**dict(row)) for row in rows]
