# /flowbot/main.py

import os
import time
import uvicorn
import asyncio
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from flowbot.config.settings import settings
from flowbot.utils.lifecycle import lifespan
from flowbot.utils.metrics import response_time_histogram
from flowbot.utils.rate_limiter import limiter
from flowbot.routes import webhooks, public

log = structlog.get_logger(__name__)

API_PREFIX = f"/api/{settings.api_version}"
SHOW_DOCS = settings.environment != "production"

app = FastAPI(
    title="Flowbot Conversation Engine",
    version="1.0.0",
    description="Declarative multi-step conversation flows for Telegram bots",
    lifespan=lifespan,
    openapi_url=f"{API_PREFIX}/openapi.json" if SHOW_DOCS else None,
    docs_url=f"{API_PREFIX}/docs" if SHOW_DOCS else None,
    redoc_url=None,
)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log.error("request_failed", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    """Bounds each request by REQUEST_TIMEOUT_SEC and records its latency per route."""
    started = time.perf_counter()
    try:
        response = await asyncio.wait_for(call_next(request), timeout=settings.request_timeout_sec)
    except asyncio.TimeoutError:
        log.warning("request_timed_out", path=request.url.path)
        response = JSONResponse({"detail": "Request timed out"}, status_code=504)
    elapsed = time.perf_counter() - started
    response_time_histogram.labels(endpoint=request.url.path).observe(elapsed)
    response.headers["X-Process-Time"] = f"{elapsed:.4f}"
    return response


# --- API Routers ---
app.include_router(public.router)
app.include_router(webhooks.router, prefix=f"{API_PREFIX}/webhooks")


if __name__ == "__main__":
    uvicorn.run(
        "flowbot.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=settings.environment == "development",
        workers=settings.workers if settings.environment == "production" else 1,
    )
