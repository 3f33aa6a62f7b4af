"""
SQL Draft Source

Asks an OpenAI-compatible chat-completions endpoint to turn a natural
language question into a single parameterised SELECT. The reply is parsed
into exactly one QueryDraft variant: a SQL draft, a clarification request,
or a failure. Nothing returned here is trusted for authorization.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union

import requests

from access_rewriter import IDENTITY_PARAM, SUB_SCOPE_PARAM_PREFIX, TENANT_PARAM
from request_context import RequestContext, raise_if_cancelled
from schema_catalog import describe_schema, load_departments, mentioned_departments

logger = logging.getLogger("nlq_gateway.draft_source")


@dataclass(frozen=True)
class SqlDraft:
    sql: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    explanation: str = "Query generated successfully."
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ClarificationDraft:
    message: str


@dataclass(frozen=True)
class DraftFailure:
    error_message: str


QueryDraft = Union[SqlDraft, ClarificationDraft, DraftFailure]


class DraftSource(Protocol):
    def generate_draft(
        self,
        natural_language_query: str,
        context: RequestContext,
        cancel_event: Optional[threading.Event] = None,
    ) -> QueryDraft: ...


SYSTEM_INSTRUCTIONS = f"""You are a SQL query generation assistant for a historical compliance reporting system.
Convert the user's question into ONE read-only SQL Server SELECT statement.

==== RULES ====
- ONLY generate SELECT queries. Never INSERT, UPDATE, DELETE, DROP or any DDL.
- Never use comments, semicolons between statements, or SELECT ... INTO.
- Use @ParameterName placeholders for every dynamic value.
- ALWAYS filter by organisation with @{TENANT_PARAM}.
- When department ids are listed below as @{SUB_SCOPE_PARAM_PREFIX}0, @{SUB_SCOPE_PARAM_PREFIX}1, ..., filter departments with IN (@{SUB_SCOPE_PARAM_PREFIX}0, ...).
- The current manager id is available as @{IDENTITY_PARAM}.
- Never select password, secret, token or credential columns.
- Use TOP N to limit large result sets (default TOP 1000) and include ORDER BY.

==== RESPONSE FORMAT ====
When you have enough information respond with a JSON object only:
{{"sql": "...", "parameters": {{"Name": "value"}}, "explanation": "...", "warnings": ["..."]}}
If the question is ambiguous, reply with a short clarifying question instead of JSON."""


def build_context_message(
    context: RequestContext,
    departments: Optional[List[Dict]] = None,
    natural_language_query: Optional[str] = None,
) -> str:
    """Describe the caller's scope to the model using the same parameter names the rewriter binds."""
    parts = [f"Current user's organisation is bound as @{TENANT_PARAM}."]
    if context.identity_id is not None:
        parts.append(f"Current manager is bound as @{IDENTITY_PARAM}.")

    bind_names: Dict[str, str] = {}
    if context.has_full_scope_access:
        parts.append("This manager has access to ALL departments in their organisation.")
    elif context.accessible_sub_scope_ids:
        names = {d["id"]: d["name"] for d in (departments or [])}
        bound = []
        for i, dept_id in enumerate(sorted(context.accessible_sub_scope_ids)):
            bind_names[dept_id] = f"@{SUB_SCOPE_PARAM_PREFIX}{i}"
            bound.append(f"{bind_names[dept_id]} = {names.get(dept_id, dept_id)}")
        parts.append("This manager has access to departments: " + ", ".join(bound))
        parts.append("IMPORTANT: Filter results to only include these departments.")

    if departments:
        listing = "; ".join(
            f"{d['name']} (aliases: {', '.join(d['aliases']) or 'none'})" for d in departments
        )
        parts.append(f"Known departments: {listing}")

        if natural_language_query:
            mentioned = mentioned_departments(departments, natural_language_query)
            if mentioned:
                refs = ", ".join(
                    f"{d['name']} ({bind_names[d['id']]})" if d["id"] in bind_names else d["name"]
                    for d in mentioned
                )
                parts.append(f"The question refers to: {refs}")
    return "\n".join(parts)


def parse_agent_response(response_text: str) -> QueryDraft:
    """
    Map a raw model reply to a QueryDraft.

    The first ``{`` to the last ``}`` is parsed as JSON; a non-empty ``sql``
    field makes a SqlDraft. Anything else is treated as the model asking for
    clarification.
    """
    text = (response_text or "").strip()
    start, end = text.find("{"), text.rfind("}")

    if start >= 0 and end > start:
        try:
            parsed = json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            lowered = {str(k).lower(): v for k, v in parsed.items()}
            sql = lowered.get("sql")
            if isinstance(sql, str) and sql.strip():
                parameters = lowered.get("parameters") or {}
                warnings = lowered.get("warnings") or []
                return SqlDraft(
                    sql=sql.strip(),
                    parameters=dict(parameters) if isinstance(parameters, dict) else {},
                    explanation=lowered.get("explanation") or "Query generated successfully.",
                    warnings=[str(w) for w in warnings] if isinstance(warnings, list) else [str(warnings)],
                )

    if not text:
        return DraftFailure("Could not generate SQL. The model returned an empty response.")
    return ClarificationDraft(message=text)


class LlmDraftSource:
    """Draft source backed by a chat-completions endpoint (vLLM or compatible)."""

    def __init__(
        self,
        api_url: str,
        model_name: str,
        api_key: str = "",
        temperature: float = 0.1,
        max_tokens: int = 4096,
        timeout: int = 120,
        engine=None,
    ):
        self.api_url = api_url
        self.model_name = model_name
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.engine = engine

    @classmethod
    def from_config(cls, cfg: dict, engine=None) -> "LlmDraftSource":
        vllm = cfg.get("vllm") or {}
        return cls(
            api_url=vllm.get("api_url", ""),
            model_name=vllm.get("model_name", ""),
            api_key=vllm.get("api_key", ""),
            temperature=float(vllm.get("temperature", 0.1)),
            max_tokens=int(vllm.get("max_tokens", 4096)),
            timeout=int(vllm.get("timeout", 120)),
            engine=engine,
        )

    def _departments(self, context: RequestContext) -> List[Dict]:
        if self.engine is None:
            return []
        ids = None if context.has_full_scope_access else sorted(context.accessible_sub_scope_ids)
        try:
            return load_departments(self.engine, context.tenant_id, ids)
        except Exception as e:
            logger.warning(f"Department lookup failed, drafting without it: {e}")
            return []

    def build_messages(self, natural_language_query: str, context: RequestContext) -> List[Dict[str, str]]:
        system_prompt = (
            f"{SYSTEM_INSTRUCTIONS}\n\n==== DATABASE SCHEMA ====\n{describe_schema()}"
        )
        return [
            {"role": "system", "content": system_prompt},
            {
                "role": "system",
                "content": build_context_message(context, self._departments(context), natural_language_query),
            },
            {"role": "user", "content": natural_language_query},
        ]

    def generate_draft(
        self,
        natural_language_query: str,
        context: RequestContext,
        cancel_event: Optional[threading.Event] = None,
    ) -> QueryDraft:
        raise_if_cancelled(cancel_event)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        started = time.perf_counter()
        try:
            response = requests.post(
                self.api_url,
                headers=headers,
                json={
                    "model": self.model_name,
                    "messages": self.build_messages(natural_language_query, context),
                    "temperature": self.temperature,
                    "max_tokens": self.max_tokens,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            content = response.json()["choices"][0]["message"].get("content") or ""
        except (requests.exceptions.RequestException, KeyError, IndexError, ValueError) as e:
            logger.error("❌ Error generating SQL: %s", e)
            return DraftFailure(f"Failed to generate SQL: {e}")

        # the HTTP call cannot be interrupted, so cancellation is observed once it returns
        raise_if_cancelled(cancel_event)
        logger.info("SQL draft received in %.2f sec", time.perf_counter() - started)

        draft = parse_agent_response(content)
        if isinstance(draft, SqlDraft):
            logger.info("SQL generated: %s", draft.sql)
        return draft
