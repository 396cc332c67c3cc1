from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from adlm.platform.health import HealthChecker

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/health/ready")
def readiness(request: Request):
    """Readiness probe: the database answers SELECT 1."""
    checker = HealthChecker(
        getattr(request.app.state, "database", None),
        getattr(request.app.state, "settings", None),
    )
    result = checker.get_health_status()
    ready = result["checks"]["database"]["status"] == "ok"
    return JSONResponse(
        status_code=200 if ready else 503,
        content={**result, "status": "ready" if ready else "not_ready"},
    )
