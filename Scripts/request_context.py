"""
Request Context and Authorization

Identity and authorization facts for the caller of the query pipeline,
resolved from session claims with a database fallback for manager scope.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Protocol

from sqlalchemy import text

logger = logging.getLogger("nlq_gateway.request_context")


class RequestCancelledError(Exception):
    """Raised when the caller aborted the request mid-pipeline."""

    def __init__(self, message: str = "Request was cancelled", sql: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.sql = sql


def raise_if_cancelled(cancel_event: Optional[threading.Event], sql: Optional[str] = None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RequestCancelledError(sql=sql)


@dataclass(frozen=True)
class RequestContext:
    """Immutable per-request authorization scope."""
    tenant_id: str
    identity_id: Optional[str] = None
    has_full_scope_access: bool = False
    accessible_sub_scope_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def create(
        cls,
        tenant_id: Any,
        identity_id: Any = None,
        has_full_scope_access: bool = False,
        accessible_sub_scope_ids: Optional[Iterable[Any]] = None,
    ) -> "RequestContext":
        return cls(
            tenant_id=str(tenant_id),
            identity_id=str(identity_id) if identity_id is not None else None,
            has_full_scope_access=bool(has_full_scope_access),
            accessible_sub_scope_ids=frozenset(str(s) for s in (accessible_sub_scope_ids or ())),
        )


class AuthorizationProvider(Protocol):
    def can_access_tenant(self, claims: Dict[str, Any], tenant_id: str) -> bool: ...

    def has_full_scope_access(self, claims: Dict[str, Any]) -> bool: ...

    def accessible_sub_scope_ids(self, claims: Dict[str, Any]) -> List[str]: ...

    def resolve_context(self, claims: Dict[str, Any]) -> Optional[RequestContext]: ...


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(v) for v in value if v]
    return [str(value)] if value else []


class ClaimsAuthorizationProvider:
    """
    Resolve caller scope from JWT claims.

    Claims used: ``organisation_id``, ``manager_id``, ``manages_all_departments``
    and ``managed_department`` (single value or list). When the scope claims are
    absent and an engine is available, the manager's row in ``Managers`` and its
    ``ManagerDepartments`` links are consulted instead.
    """

    def __init__(self, engine=None):
        self.engine = engine

    def can_access_tenant(self, claims: Dict[str, Any], tenant_id: str) -> bool:
        current = claims.get("organisation_id")
        return current is not None and str(current) == str(tenant_id)

    def has_full_scope_access(self, claims: Dict[str, Any]) -> bool:
        if "manages_all_departments" in claims:
            return _parse_bool(claims["manages_all_departments"])

        manager_id = claims.get("manager_id")
        if manager_id is None or self.engine is None:
            return False

        with self.engine.connect() as conn:
            value = conn.execute(
                text("SELECT ManagesAllDepartments FROM Managers WHERE Id = :manager_id"),
                {"manager_id": str(manager_id)},
            ).scalar()
        return bool(value)

    def accessible_sub_scope_ids(self, claims: Dict[str, Any]) -> List[str]:
        manager_id = claims.get("manager_id")
        if manager_id is None:
            return []

        from_claims = _as_list(claims.get("managed_department"))
        if from_claims:
            return from_claims

        if self.engine is None:
            return []

        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT DepartmentId FROM ManagerDepartments WHERE ManagerId = :manager_id"),
                {"manager_id": str(manager_id)},
            ).fetchall()
        return [str(row[0]) for row in rows]

    def resolve_context(self, claims: Dict[str, Any]) -> Optional[RequestContext]:
        """Return the caller's RequestContext, or None when no tenant is associated."""
        tenant_id = claims.get("organisation_id")
        if tenant_id is None:
            logger.warning("Claims carry no organisation_id; caller has no tenant scope")
            return None

        return RequestContext.create(
            tenant_id=tenant_id,
            identity_id=claims.get("manager_id"),
            has_full_scope_access=self.has_full_scope_access(claims),
            accessible_sub_scope_ids=self.accessible_sub_scope_ids(claims),
        )
