"""
Heartbeat routes

Answered ahead of access logging so that load balancer polling stays out of
the request logs.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

router = APIRouter()


@router.get("")
async def heartbeat(request: Request, deep: bool = False):
    """Aggregate dependency health; ?deep=true re-checks unless the last check is recent"""
    context = request.app.state.context
    health = context.health
    if deep:
        await health.refresh(context.settings.deep_check_min_interval)

    healthy = health.is_healthy()
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "service": context.settings.service_name,
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": context.settings.service_version,
            "dependencies": {
                name: "healthy" if ok else "unhealthy"
                for name, ok in health.state.items()
            },
        },
    )


async def metrics(request: Request):
    """Prometheus exposition of the router metrics"""
    registry = request.app.state.context.metrics
    return Response(content=registry.render(), media_type=registry.content_type)
