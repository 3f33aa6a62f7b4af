#!/usr/bin/env python3
"""
Script to push a batch of natural-language questions through the query
pipeline and save a summary plus per-query result sheets to an Excel file.
"""
import time
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from config import get_config, setup_logging
from query_pipeline import NlpQueryPipeline, get_query_pipeline
from request_context import RequestContext

logger = logging.getLogger("nlq_gateway.execute_queries")

output_dir = Path(__file__).parent / 'output'

# Style definitions for Excel
HEADER_FILL = PatternFill(
    start_color="4F81BD",  # Blue
    end_color="4F81BD",
    fill_type="solid"
)
HEADER_FONT = Font(color="FFFFFF", bold=True)
ERROR_FILL = PatternFill(
    start_color="FF0000",  # Red
    fill_type="solid"
)
WARNING_FILL = PatternFill(
    start_color="FFC000",  # Orange
    fill_type="solid"
)
SUCCESS_FILL = PatternFill(
    start_color="C6EFCE",  # Light green
    fill_type="solid"
)

SUMMARY_HEADERS = ["Query", "Status", "SQL Query", "Result Count", "Truncated", "Elapsed (ms)", "Error"]
MAX_COLUMN_WIDTH = 50


def batch_context_from_config(cfg: dict) -> RequestContext:
    """Build the RequestContext the batch runs under from the ``batch`` config section."""
    batch = cfg.get("batch") or {}
    if not batch.get("tenant_id"):
        raise ValueError("batch.tenant_id must be set to run queries")
    return RequestContext.create(
        tenant_id=batch["tenant_id"],
        identity_id=batch.get("identity_id"),
        has_full_scope_access=bool(batch.get("manages_all_departments", False)),
        accessible_sub_scope_ids=batch.get("department_ids") or [],
    )


def execute_single_query(pipeline: NlpQueryPipeline, query: str, context: RequestContext) -> Dict[str, Any]:
    """Run one question through the pipeline and flatten the outcome for reporting."""
    logger.info(f"Running query: {query[:100]}...")
    response = pipeline.process_query(query, context)

    if response.success:
        status = "success"
    elif response.clarification_needed:
        status = "clarification"
    else:
        status = "error"

    return {
        "query": query,
        "status": status,
        "sql": response.generated_sql or "",
        "columns": response.columns,
        "results": response.rows,
        "total_rows": response.total_rows,
        "was_truncated": response.was_truncated,
        "elapsed_ms": response.elapsed_ms,
        "error": response.error or response.clarification_message or "",
    }


def run_batch(
    pipeline: NlpQueryPipeline,
    context: RequestContext,
    queries: List[str],
    delay_seconds: float = 0.0,
) -> List[Dict[str, Any]]:
    results = []
    for i, query in enumerate(queries, 1):
        logger.info(f"Processing query {i}/{len(queries)}")
        result = execute_single_query(pipeline, query, context)
        results.append(result)

        if result["status"] == "success":
            logger.info(f"  ✓ Success - {result['total_rows']} results")
        else:
            logger.error(f"  ✗ {result['status']}: {result['error']}")

        # stay under the drafting endpoint's request rate
        if delay_seconds and i < len(queries):
            time.sleep(delay_seconds)
    return results


def _write_header(ws, row: int, headers: List[str]) -> None:
    for col_num, column_title in enumerate(headers, 1):
        cell = ws.cell(row=row, column=col_num, value=column_title)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT


def _autofit_columns(ws) -> None:
    for column in ws.columns:
        column_letter = get_column_letter(column[0].column)
        max_length = max((len(str(cell.value)) for cell in column if cell.value is not None), default=0)
        ws.column_dimensions[column_letter].width = min((max_length + 2) * 1.1, MAX_COLUMN_WIDTH)


def save_to_excel(results: List[Dict[str, Any]], output_path: Path) -> Path:
    """Save batch results to an Excel file with formatting."""
    wb = Workbook()
    ws_summary = wb.active
    ws_summary.title = "Summary"

    _write_header(ws_summary, 1, SUMMARY_HEADERS)
    for row_num, result in enumerate(results, 2):
        values = [
            result["query"],
            result["status"],
            result["sql"],
            result["total_rows"],
            "yes" if result["was_truncated"] else "",
            result["elapsed_ms"],
            result["error"],
        ]
        for col_num, value in enumerate(values, 1):
            ws_summary.cell(row=row_num, column=col_num, value=value)

        status_cell = ws_summary.cell(row=row_num, column=2)
        if result["status"] == "success":
            status_cell.fill = SUCCESS_FILL
        elif result["status"] == "error":
            status_cell.fill = ERROR_FILL
        else:
            status_cell.fill = WARNING_FILL

    _autofit_columns(ws_summary)

    # One detail sheet per successful query with rows
    for i, result in enumerate(results, 1):
        if result["status"] != "success" or not result["results"]:
            continue

        ws_detail = wb.create_sheet(title=f"Query_{i}")
        ws_detail.append(["Query:", result["query"]])
        ws_detail.append(["Generated SQL:", result["sql"]])
        ws_detail.append([])

        columns = result["columns"]
        _write_header(ws_detail, 4, columns)
        for row_num, row in enumerate(result["results"], 5):
            for col_num, column in enumerate(columns, 1):
                ws_detail.cell(row=row_num, column=col_num, value=row.get(column))

        _autofit_columns(ws_detail)

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(output_path)
    logger.info(f"Results saved to {output_path}")
    return output_path


def main(queries: Optional[List[str]] = None):
    setup_logging()
    cfg = get_config()
    pipeline = get_query_pipeline()
    context = batch_context_from_config(cfg)

    batch_cfg = cfg.get("batch") or {}
    queries = queries or batch_cfg.get("queries") or pipeline.get_suggestions(context)

    logger.info(f"Starting execution of {len(queries)} queries...")
    results = run_batch(pipeline, context, queries, float(batch_cfg.get("delay_seconds", 1)))

    output_file = output_dir / f"query_results_{datetime.now():%Y%m%d_%H%M%S}.xlsx"
    save_to_excel(results, output_file)

    success_count = sum(1 for r in results if r["status"] == "success")
    logger.info("=" * 50)
    logger.info(f"Execution completed. Success: {success_count}, Other: {len(results) - success_count}")
    logger.info(f"Results saved to: {output_file}")
    logger.info("=" * 50)


if __name__ == "__main__":
    main()
