import os
import tempfile
from pathlib import Path

import pytest
import yaml

# Point config at a throwaway file before any gateway module loads it
_CONFIG_DIR = Path(tempfile.mkdtemp(prefix="nlq_gateway_test_"))
TEST_JWT_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
TEST_CONFIG = {
    "vllm": {"api_url": "http://llm.test/v1/chat/completions", "model_name": "test-model"},
    "database": {"url": f"sqlite:///{_CONFIG_DIR / 'unused.db'}"},
    "nlp_query": {
        "max_result_rows": 1000,
        "query_timeout_seconds": 30,
        "enable_query_history": True,
        "enable_sql_preview": True,
        "rate_limit_per_minute": 10,
        "default_row_cap": 1000,
    },
    "rate_limiter": {"window_seconds": 60, "retry_after_seconds": 60, "sweep_interval": 1000},
    "auth": {"jwt_secret": TEST_JWT_SECRET, "jwt_algorithm": "HS256"},
    "server": {"cors": {"allow_origins": ["*"]}},
    "logging": {
        "version": 1,
        "disable_existing_loggers": False,
        "handlers": {"console": {"class": "logging.StreamHandler"}},
        "loggers": {"nlq_gateway": {"level": "DEBUG", "handlers": ["console"], "propagate": True}},
    },
}
(_CONFIG_DIR / "config.yaml").write_text(yaml.safe_dump(TEST_CONFIG))
os.environ["NLQ_GATEWAY_CONFIG"] = str(_CONFIG_DIR / "config.yaml")

from sqlalchemy import create_engine, text  # noqa: E402

from access_rewriter import AccessRewriter  # noqa: E402
from audit_logger import AuditLogger  # noqa: E402
from config import NlpQuerySettings, get_config  # noqa: E402
from draft_source import SqlDraft  # noqa: E402
from guardrails import SqlValidator  # noqa: E402
from query_pipeline import NlpQueryPipeline  # noqa: E402
from request_context import RequestContext  # noqa: E402
from sql_executor import QueryExecutor  # noqa: E402

get_config.cache_clear()

ORG_ID = "org-1"
OTHER_ORG_ID = "org-2"
DEPT_IT = "dept-it"
DEPT_HR = "dept-hr"
DEPT_FIN = "dept-fin"
DEPT_OTHER = "dept-other"
MANAGER_ID = "mgr-1"
ADMIN_MANAGER_ID = "mgr-2"

SCHEMA_DDL = [
    "CREATE TABLE Organisations (Id TEXT PRIMARY KEY, Name TEXT NOT NULL)",
    "CREATE TABLE Departments (Id TEXT PRIMARY KEY, Name TEXT NOT NULL, OrganisationId TEXT NOT NULL, ParentDepartmentId TEXT)",
    "CREATE TABLE OrganisationUsers (Id TEXT PRIMARY KEY, OrganisationId TEXT NOT NULL, DepartmentId TEXT NOT NULL)",
    "CREATE TABLE AuditRecords (Id TEXT PRIMARY KEY, UserId TEXT NOT NULL, Date INTEGER NOT NULL, Status TEXT NOT NULL)",
    "CREATE TABLE Managers (Id TEXT PRIMARY KEY, OrganisationId TEXT NOT NULL, ManagesAllDepartments INTEGER NOT NULL)",
    "CREATE TABLE ManagerDepartments (ManagerId TEXT NOT NULL, DepartmentId TEXT NOT NULL)",
]

SEED_ROWS = [
    ("INSERT INTO Organisations (Id, Name) VALUES (:id, :name)", [
        {"id": ORG_ID, "name": "ACME"},
        {"id": OTHER_ORG_ID, "name": "GLOBEX"},
    ]),
    ("INSERT INTO Departments (Id, Name, OrganisationId, ParentDepartmentId) VALUES (:id, :name, :org, NULL)", [
        {"id": DEPT_IT, "name": "Information Technology", "org": ORG_ID},
        {"id": DEPT_HR, "name": "Human Resources", "org": ORG_ID},
        {"id": DEPT_FIN, "name": "Finance", "org": ORG_ID},
        {"id": DEPT_OTHER, "name": "Operations", "org": OTHER_ORG_ID},
    ]),
    ("INSERT INTO OrganisationUsers (Id, OrganisationId, DepartmentId) VALUES (:id, :org, :dept)", [
        {"id": "u-it", "org": ORG_ID, "dept": DEPT_IT},
        {"id": "u-hr", "org": ORG_ID, "dept": DEPT_HR},
        {"id": "u-fin", "org": ORG_ID, "dept": DEPT_FIN},
        {"id": "u-other", "org": OTHER_ORG_ID, "dept": DEPT_OTHER},
    ]),
    ("INSERT INTO AuditRecords (Id, UserId, Date, Status) VALUES (:id, :user, :date, :status)", [
        {"id": "a1", "user": "u-it", "date": 20240115, "status": "Valid"},
        {"id": "a2", "user": "u-it", "date": 20240116, "status": "Invalid"},
        {"id": "a3", "user": "u-hr", "date": 20240115, "status": "Valid"},
        {"id": "a4", "user": "u-fin", "date": 20240115, "status": "Valid"},
        {"id": "a5", "user": "u-other", "date": 20240115, "status": "Invalid"},
    ]),
    ("INSERT INTO Managers (Id, OrganisationId, ManagesAllDepartments) VALUES (:id, :org, :all)", [
        {"id": MANAGER_ID, "org": ORG_ID, "all": 0},
        {"id": ADMIN_MANAGER_ID, "org": ORG_ID, "all": 1},
    ]),
    ("INSERT INTO ManagerDepartments (ManagerId, DepartmentId) VALUES (:manager, :dept)", [
        {"manager": MANAGER_ID, "dept": DEPT_IT},
        {"manager": MANAGER_ID, "dept": DEPT_HR},
    ]),
]

COMPLIANCE_BY_DEPARTMENT_SQL = (
    "SELECT d.Name AS Department, COUNT(*) AS Total, "
    "SUM(CASE WHEN a.Status = 'Valid' THEN 1 ELSE 0 END) AS ValidCount "
    "FROM AuditRecords a "
    "JOIN OrganisationUsers u ON a.UserId = u.Id "
    "JOIN Departments d ON u.DepartmentId = d.Id "
    "WHERE u.OrganisationId = @TenantId AND d.Id IN (@SubScopeId0, @SubScopeId1) "
    "GROUP BY d.Name ORDER BY d.Name"
)


class FakeDraftSource:
    """Returns a fixed draft and remembers what it was asked."""

    def __init__(self, draft):
        self.draft = draft
        self.calls = []

    def generate_draft(self, natural_language_query, context, cancel_event=None):
        self.calls.append((natural_language_query, context))
        if isinstance(self.draft, Exception):
            raise self.draft
        return self.draft


@pytest.fixture
def engine(tmp_path):
    """SQLite reporting database seeded with two organisations."""
    db_engine = create_engine(
        f"sqlite:///{tmp_path / 'reporting.db'}",
        connect_args={"check_same_thread": False},
    )
    with db_engine.begin() as conn:
        for ddl in SCHEMA_DDL:
            conn.execute(text(ddl))
        for statement, rows in SEED_ROWS:
            conn.execute(text(statement), rows)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def manager_context():
    return RequestContext.create(
        tenant_id=ORG_ID,
        identity_id=MANAGER_ID,
        has_full_scope_access=False,
        accessible_sub_scope_ids=[DEPT_IT, DEPT_HR],
    )


@pytest.fixture
def admin_context():
    return RequestContext.create(tenant_id=ORG_ID, identity_id=ADMIN_MANAGER_ID, has_full_scope_access=True)


@pytest.fixture
def empty_scope_context():
    return RequestContext.create(tenant_id=ORG_ID, identity_id="mgr-empty", has_full_scope_access=False)


@pytest.fixture
def compliance_draft():
    return SqlDraft(
        sql=COMPLIANCE_BY_DEPARTMENT_SQL,
        explanation="Valid and total audit records per department.",
    )


@pytest.fixture
def audit_logger(engine):
    return AuditLogger(engine)


@pytest.fixture
def make_pipeline(engine, audit_logger):
    """Build a pipeline over the seeded database with the given draft and settings."""

    def _make(draft, executor=None, rewriter=None, **settings):
        return NlpQueryPipeline(
            draft_source=draft if isinstance(draft, FakeDraftSource) else FakeDraftSource(draft),
            validator=SqlValidator(),
            rewriter=rewriter or AccessRewriter(default_row_cap=1000, dialect="sqlite"),
            executor=executor or QueryExecutor(engine),
            audit_logger=audit_logger,
            settings=NlpQuerySettings(**settings),
        )

    return _make
