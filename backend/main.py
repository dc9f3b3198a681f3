"""
Engagement Agent Backend - Main FastAPI Application

Run with:
    uvicorn main:app --reload --port 8000
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from adapter.grok import GrokAdapter
from adapter.rate_tracker import RateTracker
from adapter.x import XGateway
from api import router, set_dependencies
from core import AgentRuntimeState, DecisionEngine
from core.config import AgentConfig
from monitoring import monitor
from services import ResultCache

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class RequestMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware to monitor FastAPI requests."""

    async def dispatch(self, request: Request, call_next) -> Response:
        # Skip monitoring for docs and the root endpoint
        if request.url.path in ["/", "/docs", "/redoc", "/openapi.json"]:
            return await call_next(request)

        start_time = time.time()
        # Normalize endpoint name (remove /api/v1 prefix)
        endpoint = request.url.path.replace("/api/v1", "") or "/"

        try:
            response = await call_next(request)
        except Exception:
            monitor.metrics.record_request(endpoint, (time.time() - start_time) * 1000, error=True)
            raise

        latency_ms = (time.time() - start_time) * 1000
        monitor.metrics.record_request(endpoint, latency_ms, error=response.status_code >= 500)
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - setup and teardown.
    """
    logger.info("Starting engagement agent backend...")

    config = AgentConfig.from_env()

    cache = ResultCache(
        ttl_seconds=int(os.environ.get("CACHE_TTL", "900")),  # 15 min default
        max_entries=int(os.environ.get("CACHE_MAX_ENTRIES", "100")),
    )
    gateway = XGateway(
        bearer_token=os.environ.get("X_BEARER_TOKEN"),
        rate_tracker=RateTracker(),
        cache=cache,
        timeout=float(os.environ.get("X_API_TIMEOUT", "15")),
    )
    grok_adapter = GrokAdapter(max_length=config.max_response_length)

    # Log adapter status
    if gateway.is_configured:
        logger.info("✓ X Gateway configured")
    else:
        logger.warning("⚠ X Gateway not configured - set X_BEARER_TOKEN")

    if grok_adapter.is_live:
        logger.info("✓ Grok Adapter live")
    else:
        logger.warning("⚠ Grok Adapter not live - set XAI_API_KEY (heuristic classification only)")

    engine = DecisionEngine(
        gateway=gateway,
        grok_adapter=grok_adapter,
        config=config,
        state=AgentRuntimeState(),
    )

    # Set dependencies for API routes
    set_dependencies(engine, gateway)

    # Start background cache cleanup
    cleanup_task = asyncio.create_task(cache.start_cleanup_task())
    logger.info(f"✓ Result cache initialized (TTL: {cache.ttl_seconds}s)")

    # Configure monitoring
    monitor.set_component_status(
        "x_gateway",
        "healthy" if gateway.is_configured else "warning",
        {"configured": gateway.is_configured}
    )
    monitor.set_component_status(
        "grok_adapter",
        "healthy" if grok_adapter.is_live else "warning",
        {"live": grok_adapter.is_live}
    )
    monitor.set_component_status(
        "decision_engine",
        "healthy",
        {
            "dry_run": config.dry_run,
            "max_daily_actions": config.max_daily_actions,
            "cooldown_minutes": config.cooldown_minutes,
        }
    )

    if config.dry_run:
        logger.info("ℹ Dry run enabled - decisions are logged but nothing is posted")

    logger.info("📊 Monitoring available at /api/v1/monitor/*")
    logger.info("Engagement agent backend ready!")

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down engagement agent backend...")
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    logger.info("Goodbye!")


# Create FastAPI app
app = FastAPI(
    title="Engagement Agent API",
    description="Rate-limit-aware X engagement agent powered by Grok",
    version="1.0.0",
    lifespan=lifespan,
)

# Request monitoring middleware
app.add_middleware(RequestMonitoringMiddleware)

# CORS middleware for dashboards
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict this
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


# Root endpoint
@app.get("/")
async def root():
    return {"name": "Engagement Agent API", "version": "1.0.0", "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=True,
    )
