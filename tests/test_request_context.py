import threading

import pytest

from request_context import (
    ClaimsAuthorizationProvider,
    RequestCancelledError,
    RequestContext,
    raise_if_cancelled,
)

from conftest import ADMIN_MANAGER_ID, DEPT_HR, DEPT_IT, MANAGER_ID, ORG_ID


def test_context_is_immutable_and_normalised():
    context = RequestContext.create(tenant_id=42, identity_id=7, accessible_sub_scope_ids=[1, 2, 2])
    assert context.tenant_id == "42"
    assert context.identity_id == "7"
    assert context.accessible_sub_scope_ids == frozenset({"1", "2"})
    with pytest.raises(AttributeError):
        context.tenant_id = "other"


def test_raise_if_cancelled():
    event = threading.Event()
    raise_if_cancelled(event)
    raise_if_cancelled(None)
    event.set()
    with pytest.raises(RequestCancelledError) as exc_info:
        raise_if_cancelled(event, "SELECT 1")
    assert exc_info.value.sql == "SELECT 1"


def test_claims_only_resolution():
    provider = ClaimsAuthorizationProvider()
    context = provider.resolve_context({
        "organisation_id": ORG_ID,
        "manager_id": MANAGER_ID,
        "manages_all_departments": "False",
        "managed_department": [DEPT_IT, DEPT_HR],
    })
    assert context == RequestContext(ORG_ID, MANAGER_ID, False, frozenset({DEPT_IT, DEPT_HR}))


def test_missing_organisation_yields_no_context():
    assert ClaimsAuthorizationProvider().resolve_context({"manager_id": MANAGER_ID}) is None


def test_can_access_tenant():
    provider = ClaimsAuthorizationProvider()
    assert provider.can_access_tenant({"organisation_id": ORG_ID}, ORG_ID)
    assert not provider.can_access_tenant({"organisation_id": ORG_ID}, "org-2")
    assert not provider.can_access_tenant({}, ORG_ID)


def test_database_fallback_for_scoped_manager(engine):
    provider = ClaimsAuthorizationProvider(engine)
    context = provider.resolve_context({"organisation_id": ORG_ID, "manager_id": MANAGER_ID})
    assert context.has_full_scope_access is False
    assert context.accessible_sub_scope_ids == frozenset({DEPT_IT, DEPT_HR})


def test_database_fallback_for_full_scope_manager(engine):
    provider = ClaimsAuthorizationProvider(engine)
    assert provider.has_full_scope_access({"manager_id": ADMIN_MANAGER_ID}) is True
    assert provider.has_full_scope_access({"manager_id": MANAGER_ID}) is False


def test_without_manager_there_is_no_scope(engine):
    provider = ClaimsAuthorizationProvider(engine)
    context = provider.resolve_context({"organisation_id": ORG_ID})
    assert context.identity_id is None
    assert context.has_full_scope_access is False
    assert context.accessible_sub_scope_ids == frozenset()
