"""Health check endpoint: database connectivity and review pipeline state."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import check_db_connected, get_db
from app.schemas.health import HealthResponse

router = APIRouter()


@router.get("/", response_model=HealthResponse)
def get_health(request: Request, db: Session = Depends(get_db)) -> HealthResponse:
    """
    Return service health, database connectivity and whether the pipeline engine is running.
    Used by load balancers and monitoring.
    """
    settings = get_settings()
    db_status = "connected" if check_db_connected(db) else "disconnected"
    engine = getattr(request.app.state, "engine", None)

    return HealthResponse(
        status="ok",
        environment=settings.APP_ENV,
        database=db_status,
        pipeline="running" if engine is not None else "stopped",
        model=settings.OLLAMA_MODEL,
    )
