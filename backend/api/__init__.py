"""
FastAPI routes for the engagement agent backend.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Depends
from pydantic import BaseModel, Field

from adapter.models import Post, SearchFilters, SearchResult
from adapter.x import (
    XGateway,
    XAdapterError,
    XAuthenticationError,
    XForbiddenError,
    XRateLimitError,
)
from core import DecisionEngine, AgentAction
from monitoring import monitor, get_rate_limit_status, EventType

logger = logging.getLogger(__name__)

# Router for API endpoints
router = APIRouter(prefix="/api/v1", tags=["Engagement Agent"])


# ============================================================================
# Request/Response Models
# ============================================================================

class BatchRequest(BaseModel):
    """Posts to run through the decision engine."""
    posts: List[Post] = Field(min_length=1, max_length=100)
    max_concurrency: int = Field(default=5, ge=1, le=20)


class BatchResponse(BaseModel):
    processed: int
    outcomes: Dict[str, int]
    actions: List[AgentAction]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    gateway_configured: bool
    classifier_live: bool
    dry_run: bool
    details: Optional[Dict[str, Any]] = None


class ResetResponse(BaseModel):
    reset: str
    cleared: int = 0
    timestamp: datetime


# ============================================================================
# Dependencies
# ============================================================================

_engine: Optional[DecisionEngine] = None
_gateway: Optional[XGateway] = None


def set_dependencies(engine: DecisionEngine, gateway: XGateway):
    """Set the service dependencies (called from main app)."""
    global _engine, _gateway
    _engine = engine
    _gateway = gateway


def get_engine() -> DecisionEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _engine


def get_gateway() -> XGateway:
    if _gateway is None:
        raise HTTPException(status_code=503, detail="X gateway not initialized")
    return _gateway


def _http_error(e: XAdapterError) -> HTTPException:
    """Translate a gateway error into an HTTP error with a readable detail."""
    if isinstance(e, XRateLimitError):
        headers = {"Retry-After": str(math.ceil(e.retry_delay))} if e.retry_delay else None
        return HTTPException(status_code=429, detail=str(e), headers=headers)
    if isinstance(e, XForbiddenError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, XAuthenticationError):
        return HTTPException(status_code=401, detail=str(e))
    return HTTPException(status_code=502, detail=f"X API request failed: {e}")


# ============================================================================
# Routes
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(
    deep: bool = Query(default=False, description="Also ping Grok and validate X credentials"),
    engine: DecisionEngine = Depends(get_engine),
    gateway: XGateway = Depends(get_gateway),
):
    """Health check endpoint."""
    details = None
    status = "healthy" if gateway.is_configured and engine.grok_adapter.is_live else "degraded"

    if deep:
        details = await asyncio.to_thread(engine.health_check)
        status = details["status"]

    return HealthResponse(
        status=status,
        timestamp=datetime.now(timezone.utc),
        gateway_configured=gateway.is_configured,
        classifier_live=engine.grok_adapter.is_live,
        dry_run=engine.config.dry_run,
        details=details,
    )


# ----------------------------------------------------------------------------
# Agent
# ----------------------------------------------------------------------------

@router.post("/agent/process", response_model=AgentAction, tags=["Agent"])
async def process_post(post: Post, engine: DecisionEngine = Depends(get_engine)):
    """
    Run one post through classify -> decide -> gate -> generate -> execute.

    Always returns the terminal outcome; failures are reported in the body.
    """
    return await engine.process_post_async(post)


@router.post("/agent/process-batch", response_model=BatchResponse, tags=["Agent"])
async def process_batch(request: BatchRequest, engine: DecisionEngine = Depends(get_engine)):
    """Process several posts concurrently, ordered by priority score."""
    actions = await engine.process_batch(request.posts, max_concurrency=request.max_concurrency)

    outcomes: Dict[str, int] = {}
    for action in actions:
        outcomes[action.outcome.value] = outcomes.get(action.outcome.value, 0) + 1

    return BatchResponse(processed=len(actions), outcomes=outcomes, actions=actions)


@router.get("/agent/metrics", tags=["Agent"])
async def get_engagement_metrics(engine: DecisionEngine = Depends(get_engine)):
    return engine.get_engagement_metrics()


# ----------------------------------------------------------------------------
# Administrative controls
# ----------------------------------------------------------------------------

@router.post("/admin/reset-daily", response_model=ResetResponse, tags=["Admin"])
async def reset_daily(engine: DecisionEngine = Depends(get_engine)):
    """Start a new day: clear the daily action count and all cooldowns."""
    engine.reset_daily_counters()
    return ResetResponse(reset="daily_counters", timestamp=datetime.now(timezone.utc))


@router.post("/admin/reset-rate-limits", response_model=ResetResponse, tags=["Admin"])
async def reset_rate_limits(gateway: XGateway = Depends(get_gateway)):
    cleared = gateway.reset_rate_limits()
    return ResetResponse(reset="rate_limits", cleared=cleared, timestamp=datetime.now(timezone.utc))


@router.post("/admin/reset-cache", response_model=ResetResponse, tags=["Admin"])
async def reset_cache(gateway: XGateway = Depends(get_gateway)):
    cleared = gateway.reset_cache()
    return ResetResponse(reset="cache", cleared=cleared, timestamp=datetime.now(timezone.utc))


# ----------------------------------------------------------------------------
# Search
# ----------------------------------------------------------------------------

@router.get("/search", response_model=SearchResult, tags=["Search"])
async def search_posts(
    q: str = Query(default="", description="X search query"),
    keywords: List[str] = Query(default=[], description="Keywords OR-ed together when q is empty"),
    lang: List[str] = Query(default=[], description="Language filters"),
    exclude_replies: bool = Query(default=False),
    min_engagement: int = Query(default=0, ge=0),
    max_results: int = Query(default=100, ge=10, le=100),
    prefer_cache: bool = Query(default=False, description="Serve a fresh cached result without calling X"),
    gateway: XGateway = Depends(get_gateway),
):
    """
    Search recent posts.

    The `source` field tells whether results are live or cached (and why).
    When rate limited with nothing cached, responds 429 with a readable
    remaining-time message.
    """
    filters = SearchFilters(
        keywords=keywords,
        languages=lang,
        exclude_replies=exclude_replies,
        min_engagement=min_engagement,
        max_results=max_results,
    )
    try:
        return await asyncio.to_thread(gateway.search, q, filters, prefer_cache)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except XAdapterError as e:
        logger.warning(f"Search failed for '{q}': {e}")
        raise _http_error(e)


# ============================================================================
# Monitoring & Observability
# ============================================================================

@router.get("/monitor/dashboard", tags=["Monitoring"])
async def get_dashboard():
    """
    Full monitoring dashboard data.

    Returns all metrics, health status, and recent activity in one call.
    """
    return monitor.get_dashboard_data()


@router.get("/monitor/rate-limits", tags=["Monitoring"])
async def get_rate_limits(gateway: XGateway = Depends(get_gateway)):
    """
    X API rate limit status.

    Per endpoint: remaining calls, reset time and a human-readable message.
    """
    status = get_rate_limit_status(gateway.rate_tracker)

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoints": status,
        "summary": {
            "total_endpoints": len(status),
            "critical": sum(1 for s in status.values() if s["status"] == "critical"),
            "warning": sum(1 for s in status.values() if s["status"] == "warning"),
            "ok": sum(1 for s in status.values() if s["status"] == "ok"),
        }
    }


@router.get("/monitor/cache", tags=["Monitoring"])
async def get_cache_stats(gateway: XGateway = Depends(get_gateway)):
    return gateway.cache.get_stats()


@router.get("/monitor/activity", tags=["Monitoring"])
async def get_activity_feed(
    limit: int = Query(default=50, ge=1, le=200, description="Number of events"),
    event_type: Optional[str] = Query(default=None, description="Filter by event type")
):
    """
    Real-time activity feed.

    Recent structured events: API calls, cache fallbacks, rate limit
    warnings, and every terminal decision outcome.
    """
    filter_type = None
    if event_type:
        try:
            filter_type = EventType(event_type)
        except ValueError:
            valid_types = [e.value for e in EventType]
            raise HTTPException(
                status_code=400,
                detail=f"Invalid event_type. Valid options: {valid_types}"
            )

    events = monitor.activity.get_recent(limit=limit, event_type=filter_type)
    event_counts = monitor.activity.get_event_counts(since_minutes=5)

    return {
        "events": events,
        "event_counts_5m": event_counts,
        "available_types": [e.value for e in EventType],
    }


__all__ = ["router", "set_dependencies"]
