#!/usr/bin/env python3
"""
Natural-Language Query Pipeline

Composes draft → validate → rewrite → execute → audit into one request /
response cycle and exposes the history, suggestion and CSV export read paths.
Every failure mode resolves to a structured QueryResponse for the one request.
"""

import csv
import io
import logging
import threading
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from access_rewriter import AccessRewriter, EmptyScope, ScopeFilterMissing
from audit_logger import AuditLogger, AuditRecord
from config import NlpQuerySettings, get_config, get_nlp_settings
from draft_source import ClarificationDraft, DraftFailure, DraftSource, LlmDraftSource, SqlDraft
from guardrails import SqlValidator
from request_context import RequestCancelledError, RequestContext
from sql_executor import DatabaseExecutionError, QueryExecutor, QueryTimeoutError, get_db_engine

logger = logging.getLogger("nlq_gateway.query_pipeline")

EXECUTION_FAILED_MESSAGE = "The query could not be executed. Try rephrasing your question."
TIMEOUT_MESSAGE = "The query took too long to run. Try narrowing your question (for example a shorter date range)."
CANCELLED_MESSAGE = "The request was cancelled."
UNEXPECTED_MESSAGE = "An unexpected error occurred while processing your query."

DEFAULT_SUGGESTIONS = [
    "Show me the total number of valid and invalid audit records",
    "What is the compliance rate by department?",
    "Show monthly audit trends for the past year",
    "Which departments have the most invalid records?",
    "How many users are in each department?",
    "Show me the audit records for the IT department",
    "Compare this month's compliance to last month",
    "List the top 10 departments by audit volume",
    "What percentage of records are valid overall?",
    "Show daily audit counts for the last 30 days",
]


class ExportFailedError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass
class QueryResponse:
    natural_language_query: str
    success: bool = False
    explanation: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)
    total_rows: int = 0
    was_truncated: bool = False
    elapsed_ms: float = 0.0
    clarification_needed: bool = False
    clarification_message: Optional[str] = None
    error: Optional[str] = None
    generated_sql: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class NlpQueryPipeline:
    """One instance serves many requests; per-request state lives on the stack."""

    def __init__(
        self,
        draft_source: DraftSource,
        validator: SqlValidator,
        rewriter: AccessRewriter,
        executor: QueryExecutor,
        audit_logger: AuditLogger,
        settings: Optional[NlpQuerySettings] = None,
    ):
        self.draft_source = draft_source
        self.validator = validator
        self.rewriter = rewriter
        self.executor = executor
        self.audit_logger = audit_logger
        self.settings = settings or NlpQuerySettings()

    def _audit(
        self,
        query: str,
        context: RequestContext,
        generated_sql: Optional[str],
        success: bool,
        error_message: Optional[str],
        result_count: int,
        elapsed_ms: float,
    ) -> None:
        if not self.settings.enable_query_history:
            return
        try:
            self.audit_logger.record(
                identity_id=context.identity_id,
                tenant_id=context.tenant_id,
                natural_language_query=query,
                generated_sql=generated_sql,
                success=success,
                error_message=error_message,
                result_count=result_count,
                elapsed_ms=elapsed_ms,
            )
        except Exception as e:
            logger.warning(f"Failed to log NLP query: {e}")

    def _finish(
        self,
        response: QueryResponse,
        started: float,
        context: RequestContext,
        audit: bool = True,
        audit_sql: Optional[str] = None,
        audit_error: Optional[str] = None,
    ) -> QueryResponse:
        """Stamp elapsed time once and write the same value to the audit record."""
        response.elapsed_ms = round((time.perf_counter() - started) * 1000, 3)
        if audit:
            self._audit(
                query=response.natural_language_query,
                context=context,
                generated_sql=audit_sql,
                success=response.success,
                error_message=audit_error if audit_error is not None else response.error,
                result_count=response.total_rows,
                elapsed_ms=response.elapsed_ms,
            )
        if not self.settings.enable_sql_preview:
            response.generated_sql = None
        return response

    def process_query(
        self,
        natural_language_query: str,
        context: RequestContext,
        cancel_event: Optional[threading.Event] = None,
    ) -> QueryResponse:
        started = time.perf_counter()
        response = QueryResponse(natural_language_query=natural_language_query)
        generated_sql: Optional[str] = None

        try:
            logger.info(f"Processing query for manager {context.identity_id}: {natural_language_query}")
            draft = self.draft_source.generate_draft(natural_language_query, context, cancel_event)

            if isinstance(draft, ClarificationDraft):
                response.clarification_needed = True
                response.clarification_message = draft.message
                return self._finish(response, started, context, audit=self.settings.audit_clarifications)

            if isinstance(draft, DraftFailure):
                response.error = draft.error_message or "Failed to generate SQL query."
                return self._finish(response, started, context)

            if not isinstance(draft, SqlDraft):
                raise TypeError(f"Unknown draft variant: {type(draft).__name__}")

            generated_sql = draft.sql
            response.generated_sql = draft.sql
            response.explanation = draft.explanation
            response.warnings = list(draft.warnings)

            validation = self.validator.validate(draft.sql)
            response.warnings.extend(validation.warnings)
            if not validation.is_valid:
                logger.warning(f"Draft rejected by guardrails: {validation.error_message}")
                response.error = validation.error_message
                return self._finish(response, started, context, audit_sql=draft.sql)

            plan = self.rewriter.build_plan(draft.sql, draft.parameters, validation, context)

            if isinstance(plan, EmptyScope):
                response.success = True
                response.warnings.append(plan.reason)
                return self._finish(response, started, context, audit_sql=draft.sql)

            if isinstance(plan, ScopeFilterMissing):
                response.error = plan.error_message
                return self._finish(response, started, context, audit_sql=draft.sql)

            generated_sql = plan.sql
            response.generated_sql = plan.sql
            response.warnings.extend(plan.warnings)

            result = self.executor.execute(
                plan,
                timeout_seconds=self.settings.query_timeout_seconds,
                max_rows=self.settings.max_result_rows,
                cancel_event=cancel_event,
            )

            response.success = True
            response.columns = result.columns
            response.rows = result.rows
            response.total_rows = result.total_row_count
            response.was_truncated = result.was_truncated
            return self._finish(response, started, context, audit_sql=plan.sql)

        except QueryTimeoutError as e:
            logger.error(f"Query timed out: {e.message}\nSQL: {e.sql}")
            response.error = TIMEOUT_MESSAGE
            return self._finish(response, started, context, audit_sql=e.sql, audit_error=e.message)
        except DatabaseExecutionError as e:
            logger.error(f"Database execution error: {e.message}\nSQL: {e.sql}")
            response.error = EXECUTION_FAILED_MESSAGE
            return self._finish(response, started, context, audit_sql=e.sql, audit_error=e.message)
        except RequestCancelledError as e:
            logger.info("Query cancelled by caller")
            response.error = CANCELLED_MESSAGE
            return self._finish(response, started, context, audit_sql=e.sql or generated_sql)
        except Exception as e:
            logger.exception(f"Error processing NLP query: {natural_language_query}")
            response.success = False
            response.rows = []
            response.error = UNEXPECTED_MESSAGE
            return self._finish(response, started, context, audit_sql=generated_sql, audit_error=str(e))

    def get_history(self, context: RequestContext, limit: int = 20) -> List[AuditRecord]:
        return self.audit_logger.get_history(context.identity_id, limit)

    def get_suggestions(self, context: Optional[RequestContext] = None) -> List[str]:
        return list(self.settings.suggestions or DEFAULT_SUGGESTIONS)

    def export_csv(
        self,
        natural_language_query: str,
        context: RequestContext,
        cancel_event: Optional[threading.Event] = None,
    ) -> bytes:
        """Re-run the query and serialise the buffered rows as RFC-4180 CSV bytes."""
        response = self.process_query(natural_language_query, context, cancel_event)
        if not response.success:
            raise ExportFailedError(
                response.error or response.clarification_message or "Failed to execute query"
            )
        return results_to_csv(response.columns, response.rows).encode("utf-8")


def build_query_pipeline(cfg: dict) -> NlpQueryPipeline:
    """Wire the pipeline collaborators from a loaded config dict."""
    settings = get_nlp_settings(cfg)
    db_cfg = cfg.get("database") or {}
    engine = get_db_engine(db_cfg)

    audit_url = (cfg.get("audit") or {}).get("database_url")
    audit_engine = get_db_engine({"url": audit_url}) if audit_url else engine

    rewriter = AccessRewriter(
        default_row_cap=settings.default_row_cap,
        dialect=engine.dialect.name,
        enforce_scope_filters=settings.enforce_scope_filters,
    )
    return NlpQueryPipeline(
        draft_source=LlmDraftSource.from_config(cfg, engine=engine),
        validator=SqlValidator.from_config(cfg),
        rewriter=rewriter,
        executor=QueryExecutor(engine),
        audit_logger=AuditLogger(audit_engine, enabled=settings.enable_query_history),
        settings=settings,
    )


# Global pipeline instance (lazy initialization)
_query_pipeline: Optional[NlpQueryPipeline] = None


def get_query_pipeline() -> NlpQueryPipeline:
    global _query_pipeline
    if _query_pipeline is None:
        _query_pipeline = build_query_pipeline(get_config())
    return _query_pipeline


def results_to_csv(columns: List[str], rows: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow(["" if row.get(c) is None else row.get(c) for c in columns])
    return buffer.getvalue()
