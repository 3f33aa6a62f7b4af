#!/usr/bin/env python3
"""
FastAPI Server for Natural-Language Reporting Queries

This module exposes the query pipeline over HTTP: ask a question, read your
own query history, fetch suggested questions and export results as CSV.
Callers authenticate with a bearer JWT; POSTs are rate limited per identity.
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import jwt
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from config import get_config, setup_logging
from query_pipeline import ExportFailedError, NlpQueryPipeline, get_query_pipeline
from rate_limiter import SlidingWindowRateLimiter, resolve_identity_key
from request_context import AuthorizationProvider, ClaimsAuthorizationProvider, RequestContext

# Configure logging using config
setup_logging()
logger = logging.getLogger("nlq_gateway.api")

RATE_LIMITED_PREFIX = "/api/nlpquery"

app = FastAPI(
    title="Natural-Language Query Gateway",
    description="Ask reporting questions in plain language; answers are scoped to the caller's organisation",
    version="1.0.0",
)

# Configure CORS from config
cfg = get_config()
cors = ((cfg.get("server") or {}).get("cors") or {})

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors.get("allow_origins", ["*"]),
    allow_credentials=cors.get("allow_credentials", True),
    allow_methods=cors.get("allow_methods", ["*"]),
    allow_headers=cors.get("allow_headers", ["*"]),
)

bearer_scheme = HTTPBearer(auto_error=False)


# Pydantic models for request/response validation
class NlpQueryRequest(BaseModel):
    query: str


class NlpQueryResponse(BaseModel):
    success: bool
    natural_language_query: str
    generated_sql: Optional[str] = None
    explanation: Optional[str] = None
    warnings: List[str] = []
    columns: List[str] = []
    rows: List[Dict[str, Any]] = []
    total_rows: int = 0
    was_truncated: bool = False
    elapsed_ms: float = 0.0
    clarification_needed: bool = False
    clarification_message: Optional[str] = None
    error: Optional[str] = None


class QueryHistoryItem(BaseModel):
    id: str
    natural_language_query: str
    generated_sql: Optional[str] = None
    success: bool
    error_message: Optional[str] = None
    result_count: int
    elapsed_ms: float
    created_at: datetime


# Dependencies (overridable through app.dependency_overrides)
def get_pipeline() -> NlpQueryPipeline:
    return get_query_pipeline()


def get_authorization_provider(pipeline: NlpQueryPipeline = Depends(get_pipeline)) -> AuthorizationProvider:
    return ClaimsAuthorizationProvider(engine=getattr(pipeline.executor, "engine", None))


def get_rate_limiter() -> SlidingWindowRateLimiter:
    limiter = getattr(app.state, "rate_limiter", None)
    if limiter is None:
        limiter = SlidingWindowRateLimiter.from_config(get_config())
        app.state.rate_limiter = limiter
    return limiter


def decode_token(token: str) -> Dict[str, Any]:
    auth_cfg = get_config().get("auth") or {}
    return jwt.decode(
        token,
        auth_cfg.get("jwt_secret", ""),
        algorithms=[auth_cfg.get("jwt_algorithm", "HS256")],
    )


def _claims_from_header(authorization: Optional[str]) -> Dict[str, Any]:
    """Best-effort claims for rate-limit keying; an unusable token keys by address."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return {}
    try:
        return decode_token(authorization.split(" ", 1)[1].strip())
    except jwt.PyJWTError:
        return {}


async def get_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Dict[str, Any]:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        return decode_token(credentials.credentials)
    except jwt.PyJWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


async def get_request_context(
    claims: Dict[str, Any] = Depends(get_claims),
    provider: AuthorizationProvider = Depends(get_authorization_provider),
) -> RequestContext:
    context = await asyncio.to_thread(provider.resolve_context, claims)
    if context is None or context.identity_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unable to determine the caller's organisation or manager identity",
        )
    return context


async def run_with_cancellation(func, *args):
    """Run a blocking pipeline call in a worker thread; a cancelled request sets its cancel event."""
    cancel_event = threading.Event()
    try:
        return await asyncio.to_thread(func, *args, cancel_event)
    except asyncio.CancelledError:
        cancel_event.set()
        raise


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if request.method != "POST" or not request.url.path.lower().startswith(RATE_LIMITED_PREFIX):
        return await call_next(request)

    key = resolve_identity_key(
        _claims_from_header(request.headers.get("authorization")),
        request.client.host if request.client else None,
    )
    decision = get_rate_limiter().admit(key)

    if not decision.admitted:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": "Too many requests. Please wait before making more queries.",
                "retryAfterSeconds": decision.retry_after_seconds,
            },
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )

    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    return response


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


@app.post("/api/NlpQuery", response_model=NlpQueryResponse)
async def process_query(
    request: NlpQueryRequest,
    context: RequestContext = Depends(get_request_context),
    pipeline: NlpQueryPipeline = Depends(get_pipeline),
):
    """
    Answer a natural-language question.

    Failures inside the pipeline (clarification, rejection, execution errors)
    come back as a 200 with ``success`` false and a caller-safe ``error``.
    """
    if not request.query or not request.query.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Query cannot be empty")

    logger.info(f"Processing NLP query for manager {context.identity_id}: {request.query}")
    result = await run_with_cancellation(pipeline.process_query, request.query, context)
    return NlpQueryResponse(**result.to_dict())


@app.get("/api/NlpQuery/history", response_model=List[QueryHistoryItem])
async def get_query_history(
    limit: int = Query(20, ge=1, le=100),
    context: RequestContext = Depends(get_request_context),
    pipeline: NlpQueryPipeline = Depends(get_pipeline),
):
    """Most recent queries of the calling manager, newest first."""
    try:
        history = await asyncio.to_thread(pipeline.get_history, context, limit)
    except Exception as e:
        logger.error(f"Error retrieving query history: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to retrieve query history")
    return [QueryHistoryItem(**record.to_dict()) for record in history]


@app.get("/api/NlpQuery/suggestions", response_model=List[str])
async def get_suggestions(
    context: RequestContext = Depends(get_request_context),
    pipeline: NlpQueryPipeline = Depends(get_pipeline),
):
    return pipeline.get_suggestions(context)


@app.post("/api/NlpQuery/export/csv")
async def export_to_csv(
    request: NlpQueryRequest,
    context: RequestContext = Depends(get_request_context),
    pipeline: NlpQueryPipeline = Depends(get_pipeline),
):
    if not request.query or not request.query.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Query cannot be empty")

    try:
        content = await run_with_cancellation(pipeline.export_csv, request.query, context)
    except ExportFailedError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    filename = f"query_results_{datetime.now(timezone.utc):%Y%m%d_%H%M%S}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


if __name__ == "__main__":
    # Run the FastAPI application using config
    server = cfg.get("server", {}) or {}

    host = server.get("host", "0.0.0.0")
    port = int(server.get("port", 5005))
    reload_ = bool(server.get("reload", False))
    workers = int(server.get("workers", 1))

    # Ensure reload & workers aren't used together
    if reload_ and workers != 1:
        logger.warning("`reload` and `workers` are mutually exclusive. Forcing workers=1 because reload=True.")
        workers = 1

    # Rate-limit windows live in process memory
    if workers > 1:
        logger.warning("Rate limits are tracked per worker process; effective limit is multiplied by workers.")

    logger.info(f"Starting NLQ gateway on {host}:{port}")
    uvicorn.run(
        "api_server:app",
        host=host,
        port=port,
        reload=reload_,
        workers=workers,
    )
