"""Health check API endpoints for monitoring and load balancer integration."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response, status

from ..cache import redis_client

logger = logging.getLogger(__name__)

# Create the FastAPI router
router = APIRouter()


def _engine(request: Request):
    return getattr(request.app.state, "engine", None)


@router.get("/health")
async def basic_health_check(request: Request) -> Dict[str, Any]:
    """Basic health check that returns engine and dependency status."""
    engine = _engine(request)
    redis_ok = await redis_client.health_check()

    checks = {
        "engine": {"status": "healthy" if engine and engine.is_running else "stopped"},
        "redis": {"status": "healthy" if redis_ok else "unhealthy",
                  "enabled": redis_client.redis_enabled()},
    }
    if engine is not None and engine.gateway is not None:
        circuit = engine.gateway.circuit_breaker
        checks["relays"] = {"status": "degraded" if circuit.is_open else "healthy",
                            "circuit": circuit.state.value}

    degraded = any(check["status"] != "healthy" for check in checks.values())
    return {
        "status": "degraded" if degraded else "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "latest_block": engine.latest_block if engine else None,
        "checks": checks,
    }


@router.get("/health/live")
def liveness_probe() -> Dict[str, Any]:
    """Kubernetes liveness probe."""
    return {
        "status": "alive",
        "message": "Application is responsive"
    }


@router.get("/health/ready")
def readiness_probe(request: Request, response: Response) -> Dict[str, Any]:
    """Ready once the engine is running and has seen a block."""
    engine = _engine(request)
    if engine is None or not engine.is_running or engine.latest_block == 0:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "message": "Engine not running"}
    return {
        "status": "ready",
        "message": f"Engine running at block {engine.latest_block}"
    }


@router.get("/stats")
def engine_stats(request: Request, response: Response) -> Dict[str, Any]:
    """Engine, monitor, scheduler and gateway statistics."""
    engine = _engine(request)
    if engine is None:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"error": "Engine not initialized"}
    return engine.get_stats()
