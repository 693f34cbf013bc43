from contextlib import asynccontextmanager
from typing import Optional
import logging
import sys

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from taskflow.core.config import settings
from taskflow.realtime.socket_handler import ws_router
from taskflow.reminders.api import router as reminders_router
from taskflow.reminders.components import ReminderComponents, build_reminder_components, build_runner
from taskflow.reminders.config import reminder_settings

handlers = [logging.StreamHandler(sys.stdout)]
if settings.LOG_FILE:
    handlers.append(logging.FileHandler(settings.LOG_FILE))

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=handlers,
)

logger = logging.getLogger(__name__)


def create_app(
    components: Optional[ReminderComponents] = None,
    start_background: Optional[bool] = None,
    enable_metrics: Optional[bool] = None,
) -> FastAPI:
    if components is None:
        components = build_reminder_components()
    if start_background is None:
        start_background = reminder_settings.RUN_SCHEDULER_IN_PROCESS
    if enable_metrics is None:
        enable_metrics = reminder_settings.METRICS_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        logger.info("Starting up %s...", settings.PROJECT_NAME)
        runner = None
        if start_background:
            runner = build_runner(components)
            runner.start()
        else:
            logger.info("⏸️ [Startup] In-process scheduler disabled; expecting Celery beat")

        yield

        logger.info("Shutting down %s...", settings.PROJECT_NAME)
        if runner is not None:
            await runner.stop()
        components.shutdown()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="TaskFlow due-date reminders, notifications and live presence",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url=f"{settings.API_V1_STR}/docs",
        lifespan=lifespan,
    )
    app.state.reminders = components

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS or [settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(reminders_router, prefix=settings.API_V1_STR)
    app.include_router(ws_router)

    if enable_metrics:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Global HTTP exception handler"""
        logger.error(f"HTTP {exc.status_code}: {exc.detail} - {request.url}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": True,
                "message": exc.detail,
                "status_code": exc.status_code
            }
        )

    return app


# Create the FastAPI app instance
app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "taskflow.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
