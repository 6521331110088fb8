from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from boardroom.database import engine, Base, SessionLocal
import boardroom.models  # noqa: F401  # Ensure all SQLAlchemy models are registered
from boardroom.routers import realtime as realtime_router
from boardroom.services.meeting_gateway import get_meeting_gateway
from boardroom.utils.logging_config import setup_logging

logger = logging.getLogger("boardroom")


def _resolve_gateway(app: FastAPI):
    provider = app.dependency_overrides.get(get_meeting_gateway, get_meeting_gateway)
    return provider()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine)
    # Resolve the gateway up front so a missing signing key fails at startup.
    gateway = _resolve_gateway(app)
    logger.info("Database initialized; meetings gateway listening on /ws/meetings")
    yield
    await gateway.shutdown()
    logger.info("Application shutdown.")


app = FastAPI(
    title="Boardroom Live",
    description="Real-time board meeting collaboration service",
    lifespan=lifespan,
)

app.include_router(realtime_router.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {str(exc)}\n{traceback.format_exc()}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal Server Error. Please check logs."},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code} error: {exc.detail}\n{traceback.format_exc()}"
        )
    else:
        logger.info(f"HTTP {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


@app.get("/health", tags=["healthcheck"])
async def health_check():
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except Exception as e:  # noqa: BLE001
        logger.warning("Health check database connection error: %s", e)
        raise HTTPException(
            status_code=503, detail=f"Database connection failed: {str(e)}"
        )
    gateway = _resolve_gateway(app)
    return {
        "status": "healthy",
        "database": "connected",
        "connections": len(gateway.connections.active_connections),
    }
