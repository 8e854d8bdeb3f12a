import os

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware
from .routes.attendance import router as attendance_router
from .services.outbox import outbox
from .scheduler import start_scheduler, stop_scheduler

logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Routers
    app.include_router(attendance_router)

    # Local selfie storage (dev)
    if settings.storage_provider == "local":
        os.makedirs(settings.local_storage_dir, exist_ok=True)
        app.mount("/files/local", StaticFiles(directory=settings.local_storage_dir), name="local-files")

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"ok": True, "app": settings.app_name, "environment": settings.environment}

    @app.on_event("startup")
    def _startup():
        logger.info("app_startup", environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("database_tables_verified")
        if settings.enable_scheduler:
            start_scheduler()

    @app.on_event("shutdown")
    def _shutdown():
        stop_scheduler()
        outbox.flush()
        outbox.stop()
        logger.info("app_shutdown")

    return app


app = create_app()
