import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from api_server import app, get_pipeline
from draft_source import ClarificationDraft
from rate_limiter import SlidingWindowRateLimiter

from conftest import DEPT_HR, DEPT_IT, MANAGER_ID, ORG_ID, TEST_JWT_SECRET


def _auth_headers(**claims):
    token = jwt.encode(claims, TEST_JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def manager_headers():
    return _auth_headers(
        sub="user-1",
        organisation_id=ORG_ID,
        manager_id=MANAGER_ID,
        manages_all_departments=False,
        managed_department=[DEPT_IT, DEPT_HR],
    )


@pytest.fixture
def pipeline(make_pipeline, compliance_draft):
    return make_pipeline(compliance_draft)


@pytest_asyncio.fixture
async def client(pipeline):
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.state.rate_limiter = SlidingWindowRateLimiter(limit_per_minute=10)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.rate_limiter = None


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_query_returns_scoped_rows(client: AsyncClient, manager_headers):
    response = await client.post("/api/NlpQuery", json={"query": "show compliance by department"}, headers=manager_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["columns"] == ["Department", "Total", "ValidCount"]
    assert [r["Department"] for r in data["rows"]] == ["Human Resources", "Information Technology"]
    assert data["total_rows"] == 2
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "9"


@pytest.mark.asyncio
async def test_missing_token_is_unauthorized(client: AsyncClient):
    response = await client.post("/api/NlpQuery", json={"query": "x"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_bad_signature_is_unauthorized(client: AsyncClient):
    token = jwt.encode({"organisation_id": ORG_ID}, "another-secret-key-that-is-long-enough", algorithm="HS256")
    response = await client.get("/api/NlpQuery/suggestions", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
@pytest.mark.parametrize("claims", [
    {"manager_id": MANAGER_ID},
    {"organisation_id": ORG_ID, "manages_all_departments": True},
])
async def test_missing_tenant_or_identity_is_forbidden(client: AsyncClient, claims):
    response = await client.post("/api/NlpQuery", json={"query": "x"}, headers=_auth_headers(**claims))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_empty_query_is_bad_request(client: AsyncClient, manager_headers):
    response = await client.post("/api/NlpQuery", json={"query": "   "}, headers=manager_headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_history_after_query(client: AsyncClient, manager_headers):
    await client.post("/api/NlpQuery", json={"query": "show compliance by department"}, headers=manager_headers)

    response = await client.get("/api/NlpQuery/history", params={"limit": 5}, headers=manager_headers)
    assert response.status_code == 200
    (item,) = response.json()
    assert item["natural_language_query"] == "show compliance by department"
    assert item["success"] is True
    assert item["result_count"] == 2


@pytest.mark.asyncio
async def test_suggestions(client: AsyncClient, manager_headers):
    response = await client.get("/api/NlpQuery/suggestions", headers=manager_headers)
    assert response.status_code == 200
    assert len(response.json()) == 10


@pytest.mark.asyncio
async def test_export_csv(client: AsyncClient, manager_headers):
    response = await client.post("/api/NlpQuery/export/csv", json={"query": "compliance"}, headers=manager_headers)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment; filename=" in response.headers["content-disposition"]
    assert response.text.splitlines()[0] == "Department,Total,ValidCount"


@pytest.mark.asyncio
async def test_export_csv_failure_is_bad_request(client: AsyncClient, manager_headers, make_pipeline):
    app.dependency_overrides[get_pipeline] = lambda: make_pipeline(ClarificationDraft("Which year?"))
    response = await client.post("/api/NlpQuery/export/csv", json={"query": "x"}, headers=manager_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Which year?"


@pytest.mark.asyncio
async def test_eleventh_query_in_a_minute_is_rate_limited(client: AsyncClient, manager_headers):
    for expected_remaining in range(9, -1, -1):
        response = await client.post("/api/NlpQuery", json={"query": "compliance"}, headers=manager_headers)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == str(expected_remaining)

    response = await client.post("/api/NlpQuery", json={"query": "compliance"}, headers=manager_headers)
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    body = response.json()
    assert body["retryAfterSeconds"] == 60
    assert "error" in body

    # a different manager has their own window
    other = _auth_headers(organisation_id=ORG_ID, manager_id="mgr-2", manages_all_departments=True)
    response = await client.post("/api/NlpQuery", json={"query": "compliance"}, headers=other)
    assert response.status_code == 200

    # reads are not rate limited
    response = await client.get("/api/NlpQuery/suggestions", headers=manager_headers)
    assert response.status_code == 200
