"""
Access Rewriter

Turns a validated draft into an ExecutionPlan for the caller's authorization
scope: guarantees a row cap, translates ``@Name`` placeholders to bind syntax
and assembles the bound parameters. Tenant and department values always come
from the RequestContext, never from the model.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from guardrails import ValidationResult, has_row_limit
from request_context import RequestContext

logger = logging.getLogger("nlq_gateway.access_rewriter")

TENANT_PARAM = "TenantId"
IDENTITY_PARAM = "IdentityId"
SUB_SCOPE_PARAM_PREFIX = "SubScopeId"

TOP_DIALECTS = frozenset({"mssql"})

_RESERVED_PARAM = re.compile(
    rf"^(?:{TENANT_PARAM}|{IDENTITY_PARAM}|{SUB_SCOPE_PARAM_PREFIX}\d+)$", re.IGNORECASE
)
_AT_PLACEHOLDER = re.compile(r"(?<![@\w])@([A-Za-z_]\w*)")
_BIND_PLACEHOLDER = re.compile(r"(?<![:\w]):([A-Za-z_]\w*)")
_STRING_LITERAL = re.compile(r"('(?:[^']|'')*')")
_LEADING_SELECT = re.compile(r"^SELECT\s+((?:DISTINCT|ALL)\s+)?", re.IGNORECASE)
_PLAN_TOKEN = object()


@dataclass(frozen=True)
class ExecutionPlan:
    """Rewritten SQL plus its bound parameters. Issued only by AccessRewriter.build_plan."""
    sql: str
    parameters: Mapping[str, Any]
    warnings: List[str] = field(default_factory=list)
    _token: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self._token is not _PLAN_TOKEN:
            raise TypeError("ExecutionPlan is issued by AccessRewriter.build_plan from a validated draft")


@dataclass(frozen=True)
class EmptyScope:
    """The caller can see no department, so nothing may be queried."""
    reason: str = "No accessible departments for this manager."


@dataclass(frozen=True)
class ScopeFilterMissing:
    """The draft does not filter on the bound scope parameters (strict mode only)."""
    error_message: str


class PlanRejectedError(ValueError):
    """Raised when a plan is requested for a draft that did not pass validation."""


def is_reserved_parameter(name: str) -> bool:
    return bool(_RESERVED_PARAM.match(name))


def sub_scope_parameter_names(count: int) -> List[str]:
    return [f"{SUB_SCOPE_PARAM_PREFIX}{i}" for i in range(count)]


def canonical_parameter_name(name: str) -> str:
    """Reserved names match case-insensitively; return the spelling they are bound under."""
    if not is_reserved_parameter(name):
        return name
    lowered = name.lower()
    if lowered == TENANT_PARAM.lower():
        return TENANT_PARAM
    if lowered == IDENTITY_PARAM.lower():
        return IDENTITY_PARAM
    return f"{SUB_SCOPE_PARAM_PREFIX}{name[len(SUB_SCOPE_PARAM_PREFIX):]}"


def _outside_literals(sql: str) -> List[str]:
    """Split SQL on single-quoted literals; even indexes are code, odd are literals."""
    return _STRING_LITERAL.split(sql)


def to_bind_syntax(sql: str) -> str:
    """Rewrite ``@Name`` placeholders as ``:Name`` (SQLAlchemy text() binds).

    Reserved placeholders are respelled canonically, so ``@tenantid`` binds
    as ``:TenantId``.
    """
    parts = _outside_literals(sql)
    for i in range(0, len(parts), 2):
        code = _AT_PLACEHOLDER.sub(r":\1", parts[i])
        parts[i] = _BIND_PLACEHOLDER.sub(lambda m: f":{canonical_parameter_name(m.group(1))}", code)
    return "".join(parts)


def referenced_parameters(sql: str) -> List[str]:
    names: List[str] = []
    for code in _outside_literals(sql)[::2]:
        names.extend(_BIND_PLACEHOLDER.findall(code))
    return list(dict.fromkeys(names))


def enforce_row_cap(sql: str, row_cap: int, dialect: str = "mssql") -> str:
    """Inject a default row cap when the statement has no limiting clause."""
    if has_row_limit(sql):
        return sql

    if dialect in TOP_DIALECTS:
        return _LEADING_SELECT.sub(
            lambda m: f"SELECT {m.group(1) or ''}TOP {int(row_cap)} ", sql, count=1
        )
    return f"{sql} LIMIT {int(row_cap)}"


class AccessRewriter:
    """Rewrites validated SQL so it can only run within the caller's scope."""

    def __init__(self, default_row_cap: int = 1000, dialect: str = "mssql", enforce_scope_filters: bool = False):
        self.default_row_cap = default_row_cap
        self.dialect = dialect.split("+")[0].lower()
        self.enforce_scope_filters = enforce_scope_filters

    def rewrite(
        self,
        sql: str,
        tenant_id: str,
        sub_scope_ids: Iterable[str],
        has_full_scope_access: bool,
    ) -> str:
        """
        Return SQL that is safe to execute for the given scope.

        The scope arguments decide which parameters get bound; the text itself
        only gains a row cap and bind syntax.
        """
        rewritten = sql.strip()
        if rewritten.endswith(";"):
            rewritten = rewritten[:-1].rstrip()
        rewritten = enforce_row_cap(rewritten, self.default_row_cap, self.dialect)
        return to_bind_syntax(rewritten)

    def security_parameters(self, context: RequestContext) -> Dict[str, Any]:
        params: Dict[str, Any] = {TENANT_PARAM: context.tenant_id}
        if context.identity_id is not None:
            params[IDENTITY_PARAM] = context.identity_id
        if not context.has_full_scope_access:
            ordered = sorted(context.accessible_sub_scope_ids)
            params.update(zip(sub_scope_parameter_names(len(ordered)), ordered))
        return params

    def build_plan(
        self,
        sql: str,
        model_parameters: Optional[Mapping[str, Any]],
        validation: ValidationResult,
        context: RequestContext,
    ) -> Union[ExecutionPlan, EmptyScope, ScopeFilterMissing]:
        if not validation.is_valid:
            raise PlanRejectedError(validation.error_message or "Draft failed validation")

        if not context.has_full_scope_access and not context.accessible_sub_scope_ids:
            logger.info("Caller %s has no accessible departments; short-circuiting", context.identity_id)
            return EmptyScope()

        final_sql = self.rewrite(
            sql, context.tenant_id, context.accessible_sub_scope_ids, context.has_full_scope_access
        )
        parameters = self.security_parameters(context)
        warnings: List[str] = []

        for name, value in (model_parameters or {}).items():
            key = str(name).lstrip("@")
            if is_reserved_parameter(key):
                warnings.append(
                    f"Ignored model-supplied value for reserved parameter '{canonical_parameter_name(key)}'."
                )
                continue
            parameters.setdefault(key, value)

        referenced = set(referenced_parameters(final_sql))
        scope_problems: List[str] = []
        if TENANT_PARAM not in referenced:
            scope_problems.append(f"Query does not filter by @{TENANT_PARAM}.")
        if not context.has_full_scope_access and not any(
            n.startswith(SUB_SCOPE_PARAM_PREFIX) for n in referenced
        ):
            scope_problems.append("Query does not filter by the accessible departments.")

        if scope_problems:
            if self.enforce_scope_filters:
                return ScopeFilterMissing(" ".join(scope_problems))
            warnings.extend(scope_problems)

        return ExecutionPlan(sql=final_sql, parameters=parameters, warnings=warnings, _token=_PLAN_TOKEN)
