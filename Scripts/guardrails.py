# --- SQL Guardrails ---
"""
Static policy checks for model-drafted SQL.

Checks run over normalised SQL text with regular expressions. Table
extraction from FROM/JOIN clauses is a best-effort heuristic and can both
over- and under-match (subqueries, quoted identifiers), so it only produces
warnings.
"""
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from schema_catalog import ALLOWED_TABLES, HIGH_VOLUME_TABLE

FORBIDDEN_KEYWORDS = (
    "INSERT", "UPDATE", "DELETE", "MERGE", "DROP", "CREATE", "ALTER", "TRUNCATE", "INTO",
    "EXEC", "EXECUTE", "GRANT", "REVOKE", "DENY",
    "BACKUP", "RESTORE", "SHUTDOWN", "KILL", "WAITFOR",
    "OPENROWSET", "OPENDATASOURCE", "OPENQUERY", "BULK",
    "CMDSHELL", "RECONFIGURE", "DBCC",
)

# Stored-procedure prefixes match as the start of a token (sp_executesql, xp_cmdshell).
FORBIDDEN_PREFIXES = ("SP_", "XP_")

FORBIDDEN_COLUMNS = (
    "PasswordHash", "Password", "PasswordSalt", "Secret", "ClientSecret",
    "ApiKey", "Token", "AccessToken", "RefreshToken", "Credential", "Credentials",
)

_KEYWORD_PATTERNS = [(kw, re.compile(rf"\b{kw}\b", re.IGNORECASE)) for kw in FORBIDDEN_KEYWORDS]
_PREFIX_PATTERNS = [re.compile(rf"\b{re.escape(p)}\w*", re.IGNORECASE) for p in FORBIDDEN_PREFIXES]
_UNION_SELECT = re.compile(r"\bUNION\s+(?:ALL\s+)?SELECT\b", re.IGNORECASE)
_TABLE_REF = re.compile(r"\b(?:FROM|JOIN)\s+((?:\[?\w+\]?\s*\.\s*)*\[?\w+\]?)", re.IGNORECASE)
_WHERE = re.compile(r"\bWHERE\b", re.IGNORECASE)

# TOP n / TOP (n), LIMIT n, OFFSET ... FETCH
ROW_LIMIT_PATTERN = re.compile(
    r"\bTOP\s*\(?\s*\d+|\bLIMIT\s+\d+|\bFETCH\s+(?:FIRST|NEXT)\b|\bOFFSET\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    error_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def passed(cls, warnings: Optional[List[str]] = None) -> "ValidationResult":
        return cls(True, None, list(warnings or []))

    @classmethod
    def failed(cls, error: str, warnings: Optional[List[str]] = None) -> "ValidationResult":
        return cls(False, error, list(warnings or []))


def _normalize_sql(sql: str) -> str:
    return re.sub(r"\s+", " ", sql).strip()


def _forbidden_keywords(sql: str) -> List[str]:
    found = [kw for kw, pattern in _KEYWORD_PATTERNS if pattern.search(sql)]
    for pattern in _PREFIX_PATTERNS:
        for match in pattern.finditer(sql):
            token = match.group(0).upper()
            if token not in found:
                found.append(token)
    return found


def _forbidden_columns(sql: str) -> List[str]:
    return [
        col for col in FORBIDDEN_COLUMNS
        if re.search(rf"\b{re.escape(col)}\b", sql, re.IGNORECASE)
    ]


def _has_multiple_statements(sql: str) -> bool:
    count = sql.count(";")
    return count > 1 or (count == 1 and not sql.rstrip().endswith(";"))


def has_row_limit(sql: str) -> bool:
    return bool(ROW_LIMIT_PATTERN.search(sql))


def extract_table_names(sql: str) -> List[str]:
    """Return distinct table names referenced in FROM/JOIN clauses, schema prefix dropped."""
    tables: List[str] = []
    for match in _TABLE_REF.finditer(sql):
        last_part = re.split(r"\s*\.\s*", match.group(1))[-1].strip("[]")
        if last_part and last_part not in tables:
            tables.append(last_part)
    return tables


class SqlValidator:
    """Blocking policy checks plus advisory warnings for a single SELECT draft."""

    def __init__(
        self,
        allowed_tables: Optional[Iterable[str]] = None,
        high_volume_table: Optional[str] = HIGH_VOLUME_TABLE,
    ):
        source = allowed_tables if allowed_tables is not None else ALLOWED_TABLES
        self.allowed_tables = frozenset(t.lower() for t in source)
        self.high_volume_table = high_volume_table

    @classmethod
    def from_config(cls, cfg: dict) -> "SqlValidator":
        section = cfg.get("validator") or {}
        return cls(
            allowed_tables=section.get("allowed_tables"),
            high_volume_table=section.get("high_volume_table", HIGH_VOLUME_TABLE),
        )

    def validate(self, sql: Optional[str]) -> ValidationResult:
        if not sql or not isinstance(sql, str) or not sql.strip():
            return ValidationResult.failed("SQL query cannot be empty.")

        normalized = _normalize_sql(sql)
        errors: List[str] = []
        warnings: List[str] = []

        for keyword in _forbidden_keywords(normalized):
            errors.append(f"Forbidden keyword detected: {keyword}. Only SELECT queries are allowed.")

        for column in _forbidden_columns(normalized):
            errors.append(f"Forbidden column detected: {column}. This column cannot be selected.")

        if "--" in normalized or "/*" in normalized:
            errors.append("SQL comments are not allowed.")

        if _has_multiple_statements(normalized):
            errors.append("Multiple SQL statements are not allowed.")

        if not normalized.upper().startswith("SELECT"):
            errors.append("Query must start with SELECT.")

        if _UNION_SELECT.search(normalized):
            warnings.append("UNION SELECT detected. Ensure this is intentional.")

        for table in extract_table_names(normalized):
            if table.lower() not in self.allowed_tables:
                warnings.append(f"Query references table '{table}' which may not exist.")

        if (
            self.high_volume_table
            and re.search(rf"\b{re.escape(self.high_volume_table)}\b", normalized, re.IGNORECASE)
            and not _WHERE.search(normalized)
        ):
            warnings.append(f"Query on {self.high_volume_table} without WHERE clause may be slow.")

        if not has_row_limit(normalized):
            warnings.append("Consider using TOP N or LIMIT N to limit results.")

        if errors:
            return ValidationResult.failed(" ".join(errors), warnings)
        return ValidationResult.passed(warnings)


_default_validator = SqlValidator()


def validate_generated_sql(sql: str) -> ValidationResult:
    """Validate generated SQL with the default allow-list."""
    return _default_validator.validate(sql)
