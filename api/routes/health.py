"""Health check routes."""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api.dependencies import get_services
from api.models.requests import ThresholdSignal
from api.models.responses import APIResponse
from payment_resilience.container import PaymentServices

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthcheck(services: PaymentServices = Depends(get_services)):
    """
    Health check endpoint.

    Tests database and shared cache connectivity and returns health status.
    """
    status = {
        "status": "healthy",
        "database": "connected",
        "cache": "connected",
        "bookkeeping_failures": services.lock_manager.bookkeeping_failures,
        "sweeper_running": services.sweeper.running,
    }

    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        status.update({"status": "unhealthy", "database": "disconnected", "error": str(e)})

    try:
        if not await services.cache.ping():
            raise ConnectionError("cache ping returned false")
    except Exception as e:
        status.update({"status": "unhealthy", "cache": "disconnected", "cache_error": str(e)})

    if status["status"] != "healthy":
        # Return 503 Service Unavailable if unhealthy
        return JSONResponse(status_code=503, content=status)
    return status


@router.get("/ready")
async def readiness():
    """
    Readiness check endpoint.

    Simple check that the service is ready to handle requests.
    """
    return {"status": "ready"}


@router.get("/live")
async def liveness():
    """
    Liveness check endpoint.

    Simple check that the service is alive.
    """
    return {"status": "alive"}


@router.get("/health/breakers")
async def breaker_status(services: PaymentServices = Depends(get_services)):
    """Snapshot of every circuit breaker in this process."""
    return APIResponse.success(data={"breakers": services.breakers.snapshots()})


@router.post("/health/breakers/{partition}/threshold")
async def breaker_threshold(
    partition: str,
    signal: ThresholdSignal,
    services: PaymentServices = Depends(get_services)
):
    """Load signal hook: a critical level tightens the partition's breakers."""
    services.payment_flow.breaker_for(partition)
    changed = services.breakers.handle_threshold_reached(partition, signal.level)
    return APIResponse.success(data={"partition": partition, "level": signal.level, "breakers_tightened": changed})
