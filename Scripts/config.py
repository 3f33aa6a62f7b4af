import copy
import os
import sys
import yaml
import logging
import logging.config
from dataclasses import dataclass, field
from pathlib import Path
from functools import lru_cache
from typing import List, Optional

from sqlalchemy.engine import URL

PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONFIG_PATH = PROJECT_ROOT / "Config" / "config.yaml"
DEFAULT_LOG_FILE = PROJECT_ROOT / "logs" / "nlq_gateway.log"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


@lru_cache(maxsize=1)
def get_config() -> dict:
    """Load and cache application configuration from config.yaml."""
    config_path = Path(os.environ.get("NLQ_GATEWAY_CONFIG", CONFIG_PATH))
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found at {config_path}")
    with open(config_path, "r") as f:
        cfg = yaml.safe_load(f) or {}
    return cfg


@dataclass
class NlpQuerySettings:
    """Tunables for the query pipeline (``nlp_query`` section)."""
    max_result_rows: int = 1000
    query_timeout_seconds: int = 30
    enable_query_history: bool = True
    enable_sql_preview: bool = True
    rate_limit_per_minute: int = 10
    default_row_cap: int = 1000
    audit_clarifications: bool = False
    enforce_scope_filters: bool = False
    suggestions: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, section: dict) -> "NlpQuerySettings":
        known = {k: v for k, v in (section or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)


def get_nlp_settings(cfg: Optional[dict] = None) -> NlpQuerySettings:
    cfg = get_config() if cfg is None else cfg
    return NlpQuerySettings.from_dict(cfg.get("nlp_query") or {})


def _resolve_log_path(filename: str) -> Path:
    path = Path(filename).expanduser()
    return path if path.is_absolute() else (PROJECT_ROOT / path).resolve()


def _prepare_file_handlers(logging_cfg: dict) -> None:
    """Make every file handler point at an existing directory, or at the default log file."""
    for name, handler in (logging_cfg.get("handlers") or {}).items():
        if "filename" not in handler:
            continue
        target = _resolve_log_path(handler["filename"])
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            print(f"Warning: handler '{name}' falls back to {DEFAULT_LOG_FILE}: {e}", file=sys.stderr)
            DEFAULT_LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            target = DEFAULT_LOG_FILE
        handler["filename"] = str(target)


def _basic_logging(reason: Exception) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    try:
        DEFAULT_LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(DEFAULT_LOG_FILE, mode="a", encoding="utf-8"))
    except OSError as e:
        print(f"Warning: file logging disabled, {DEFAULT_LOG_FILE.parent} is not writable: {e}", file=sys.stderr)

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, handlers=handlers)
    logging.getLogger("nlq_gateway.config").warning(f"Failed to load logging config: {reason}")


def setup_logging() -> None:
    """
    Configure logging from the ``logging`` section of config.yaml.
    Any problem with that section falls back to console + default log file.
    """
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    try:
        logging_cfg = copy.deepcopy(get_config()["logging"])
        _prepare_file_handlers(logging_cfg)
        logging.config.dictConfig(logging_cfg)
    except Exception as e:
        _basic_logging(e)
        return

    if not root.handlers:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(stream)


def build_database_url(db_cfg: dict):
    """Build a SQLAlchemy URL from the ``database`` config dict.

    An explicit ``url`` wins; otherwise the URL is assembled from the
    dialect/host/port/name/user/password keys.
    """
    if db_cfg.get("url"):
        return db_cfg["url"]

    dialect = db_cfg.get("dialect", "mssql+pyodbc")
    query = {}
    if db_cfg.get("driver"):
        query["driver"] = db_cfg["driver"]
    return URL.create(
        dialect,
        username=db_cfg.get("user"),
        password=db_cfg.get("password"),
        host=db_cfg.get("host"),
        port=db_cfg.get("port"),
        database=db_cfg.get("name"),
        query=query,
    )
