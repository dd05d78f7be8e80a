# /flowbot/routes/public.py

from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from flowbot.config.settings import settings
from flowbot.services.bot_service import flow_bot
from flowbot.services.telegram_service import telegram_service
from flowbot.utils.dependencies import verify_metrics_access

# Unauthenticated health checks plus the API-key protected Prometheus endpoint.

router = APIRouter()


@router.get("/")
async def root():
    return {
        "service": "Flowbot Conversation Engine",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment,
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Ready once at least one flow is loaded. Reports live sessions and the Telegram circuit state."""
    flows = flow_bot.catalog.flow_ids()
    if not flows:
        raise HTTPException(status_code=503, detail="Service not ready: no flows loaded")
    return {
        "status": "ready",
        "flows": len(flows),
        "active_sessions": await flow_bot.store.count(),
        "telegram_circuit": telegram_service.circuit_breaker.state.value,
    }


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    return {"status": "alive"}


@router.get("/metrics", tags=["Monitoring"], dependencies=[Depends(verify_metrics_access)])
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
