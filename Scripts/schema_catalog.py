"""
Schema Catalog

Static description of the reporting schema used to ground SQL drafts, the
table allow-list consumed by the guardrails, and a department lookup with
common aliases so the drafting model can map "IT" or "HR" to department ids.
"""

import json
import logging
import re
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Tuple

from sqlalchemy import text

logger = logging.getLogger("nlq_gateway.schema_catalog")


@dataclass(frozen=True)
class ColumnDefinition:
    name: str
    data_type: str
    description: str
    is_primary_key: bool = False


@dataclass(frozen=True)
class TableDefinition:
    name: str
    description: str
    columns: Tuple[ColumnDefinition, ...] = field(default_factory=tuple)


def _col(name: str, data_type: str, description: str, pk: bool = False) -> ColumnDefinition:
    return ColumnDefinition(name, data_type, description, pk)


_TIMESTAMPS = (
    _col("CreatedAt", "datetime2", "Record creation timestamp"),
    _col("UpdatedAt", "datetime2", "Last update timestamp (nullable)"),
)

TABLES: Tuple[TableDefinition, ...] = (
    TableDefinition("Organisations", "Organisation/company information", (
        _col("Id", "uniqueidentifier", "Primary key", True),
        _col("Name", "nvarchar(10)", "Organisation name/code"),
    ) + _TIMESTAMPS),
    TableDefinition("Departments", "Departments within organisations", (
        _col("Id", "uniqueidentifier", "Primary key", True),
        _col("Name", "nvarchar(100)", "Department name"),
        _col("OrganisationId", "uniqueidentifier", "FK to Organisations"),
        _col("ParentDepartmentId", "uniqueidentifier", "Self-reference for hierarchy (nullable)"),
    ) + _TIMESTAMPS),
    TableDefinition("OrganisationUsers", "Users/employees within organisations", (
        _col("Id", "uniqueidentifier", "Primary key", True),
        _col("OrganisationId", "uniqueidentifier", "FK to Organisations"),
        _col("DepartmentId", "uniqueidentifier", "FK to Departments"),
    ) + _TIMESTAMPS),
    TableDefinition("AuditRecords", "Audit/compliance records per user (main fact table)", (
        _col("Id", "uniqueidentifier", "Primary key", True),
        _col("UserId", "uniqueidentifier", "FK to OrganisationUsers"),
        _col("Date", "int", "Date as yyyyMMdd integer (e.g. 20240115)"),
        _col("Status", "nvarchar(20)", "'Valid' or 'Invalid'"),
    ) + _TIMESTAMPS),
    TableDefinition("Managers", "Manager accounts", (
        _col("Id", "uniqueidentifier", "Primary key", True),
        _col("OrganisationId", "uniqueidentifier", "FK to Organisations"),
        _col("ManagesAllDepartments", "bit", "If true, has access to all departments"),
    ) + _TIMESTAMPS),
    TableDefinition("ManagerDepartments", "Manager-department junction", (
        _col("ManagerId", "uniqueidentifier", "FK to Managers (composite PK)", True),
        _col("DepartmentId", "uniqueidentifier", "FK to Departments (composite PK)", True),
    )),
)

RELATIONSHIPS: List[Dict[str, str]] = [
    {"from": "Departments.OrganisationId", "to": "Organisations.Id", "type": "many-to-one"},
    {"from": "Departments.ParentDepartmentId", "to": "Departments.Id", "type": "self-reference"},
    {"from": "OrganisationUsers.OrganisationId", "to": "Organisations.Id", "type": "many-to-one"},
    {"from": "OrganisationUsers.DepartmentId", "to": "Departments.Id", "type": "many-to-one"},
    {"from": "AuditRecords.UserId", "to": "OrganisationUsers.Id", "type": "many-to-one"},
    {"from": "Managers.OrganisationId", "to": "Organisations.Id", "type": "many-to-one"},
    {"from": "ManagerDepartments.ManagerId", "to": "Managers.Id", "type": "many-to-one"},
    {"from": "ManagerDepartments.DepartmentId", "to": "Departments.Id", "type": "many-to-one"},
]

NOTES: List[str] = [
    "AuditRecords.Date is a yyyyMMdd integer. Year: Date/10000, Month: (Date/100)%100, Day: Date%100",
    "Status values are exactly 'Valid' or 'Invalid' (case-sensitive)",
    "Never select password, secret or token columns from any table",
    "AuditRecords holds millions of rows: always filter it with a WHERE clause",
    "Join path: AuditRecords -> OrganisationUsers -> Departments/Organisations",
]

# Known tables that are not described to the drafting model.
_EXTRA_KNOWN_TABLES = ("Reports", "Users", "NlpQueryLogs")

ALLOWED_TABLES: frozenset = frozenset(t.name.lower() for t in TABLES) | frozenset(
    t.lower() for t in _EXTRA_KNOWN_TABLES
)

HIGH_VOLUME_TABLE = "AuditRecords"

DEPARTMENT_ALIASES: Dict[str, List[str]] = {
    "information technology": ["IT", "Tech", "Technology", "IS"],
    "human resources": ["HR", "People", "Personnel", "Talent"],
    "finance": ["Fin", "Accounting", "Accounts"],
    "sales": ["Sales Team", "Revenue", "BD", "Business Development"],
    "marketing": ["Mktg", "Brand", "Growth"],
    "operations": ["Ops"],
    "engineering": ["Eng", "Dev", "Development", "R&D"],
    "customer service": ["CS", "Support", "Help Desk"],
    "legal": ["Legal Team", "Compliance"],
    "administration": ["Admin"],
    "quality assurance": ["QA", "Quality", "Testing"],
    "product": ["PM", "Product Management"],
    "design": ["UX", "UI", "Creative"],
    "data": ["Analytics", "BI", "Data Science"],
    "security": ["InfoSec", "Cybersecurity"],
}


def describe_schema() -> str:
    """Render tables, relationships and notes as JSON for the drafting prompt."""
    schema = {
        "tables": [
            {
                "name": t.name,
                "description": t.description,
                "columns": [asdict(c) for c in t.columns],
            }
            for t in TABLES
        ],
        "relationships": RELATIONSHIPS,
        "notes": NOTES,
    }
    return json.dumps(schema, indent=2)


def department_aliases(department_name: str) -> List[str]:
    """
    Return common aliases for a department name, plus its acronym.

    Exact names use the alias map directly; otherwise the first map entry that
    contains (or is contained in) the name is used.
    """
    name = department_name.strip()
    lowered = name.lower()
    aliases: List[str] = list(DEPARTMENT_ALIASES.get(lowered, []))

    if not aliases:
        for key, values in DEPARTMENT_ALIASES.items():
            if key in lowered or lowered in key:
                aliases.extend(values)
                break

    words = name.split()
    if len(words) > 1:
        acronym = "".join(w[0].upper() for w in words)
        if acronym not in aliases:
            aliases.append(acronym)

    return list(dict.fromkeys(aliases))


def load_departments(engine, tenant_id: str, department_ids: Optional[List[str]] = None) -> List[Dict]:
    """Fetch a tenant's departments (optionally restricted to ids) with their aliases."""
    sql = "SELECT Id, Name FROM Departments WHERE OrganisationId = :tenant_id ORDER BY Name"
    with engine.connect() as conn:
        rows = conn.execute(text(sql), {"tenant_id": str(tenant_id)}).fetchall()

    allowed = {str(d) for d in department_ids} if department_ids is not None else None
    departments = []
    for dept_id, name in rows:
        if allowed is not None and str(dept_id) not in allowed:
            continue
        departments.append({"id": str(dept_id), "name": name, "aliases": department_aliases(name)})
    return departments


def search_departments(departments: List[Dict], search_term: str) -> List[Dict]:
    """Match a search term against department names and aliases, exact matches first."""
    needle = search_term.strip().lower()
    if not needle:
        return []

    matches = []
    for dept in departments:
        names = [dept["name"]] + list(dept.get("aliases", []))
        if any(needle in n.lower() for n in names):
            exact = any(n.lower() == needle for n in names)
            matches.append((not exact, dept))
    matches.sort(key=lambda m: m[0])
    return [d for _, d in matches]


def mentioned_departments(departments: List[Dict], question: str) -> List[Dict]:
    """Departments the question names outright, by full name or by an exact alias."""
    lowered = question.lower()
    found = [d for d in departments if d["name"].lower() in lowered]
    for word in re.findall(r"[\w&]+", question):
        hits = search_departments(departments, word)
        if not hits:
            continue
        best = hits[0]
        if word.lower() in (n.lower() for n in [best["name"]] + list(best.get("aliases", []))):
            found.append(best)
    return list({d["id"]: d for d in found}.values())
