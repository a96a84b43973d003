"""
LeafScan Backend — Health Check Route
=======================================

What:  Health check endpoint for monitoring and load balancer checks.
Why:   Orchestrators need to know whether this instance can serve /analyze
       before routing traffic to it.
How:   The default check reports configuration state and tracker size
       without calling Gemini. `?deep=true` also asks the inference client
       whether the provider is reachable.

Status levels:
    - healthy:   credential configured (and, when deep, Gemini reachable)
    - degraded:  credential missing, or the deep check could not reach Gemini
                 (HTTP 200 either way, flag for monitoring)

Why deep is opt-in:
    Load balancers poll every few seconds. A provider round trip on each
    poll adds latency and API traffic; the deep check is for dashboards and
    deploy checks.
"""

import logging
import time

from fastapi import APIRouter, Query, Request

from leafscan import __version__
from leafscan.schemas.diagnosis import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

# Why module-level: set once at import, shared by every check
_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(
    request: Request,
    deep: bool = Query(default=False, description="Also check that the Gemini API is reachable"),
) -> HealthResponse:
    service = request.app.state.diagnosis_service

    if not service.settings.gemini_configured:
        gemini_status = "not_configured"
        overall = "degraded"
        logger.warning("Health check: GEMINI_API_KEY is not configured")
    elif deep:
        # health_check() never raises; False means unreachable or unauthenticated
        if await service.inference_client.health_check():
            gemini_status = "available"
            overall = "healthy"
        else:
            gemini_status = "unavailable"
            overall = "degraded"
            logger.warning("Health check: Gemini unreachable")
    else:
        gemini_status = "configured"
        overall = "healthy"

    return HealthResponse(
        status=overall,
        version=__version__,
        gemini=gemini_status,
        tracked_clients=len(service.usage_tracker),
        uptime_seconds=round(time.time() - _start_time, 2),
    )
