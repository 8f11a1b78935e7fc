"""
FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from exam_engine.api.admin import router as admin_router
from exam_engine.api.applications import router as applications_router
from exam_engine.api.mock_tests import router as mock_tests_router
from exam_engine.core.config import settings
from exam_engine.core.database import init_db
from exam_engine.core.errors import register_error_handlers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION} ({settings.ENVIRONMENT})")
    if settings.AUTO_CREATE_TABLES:
        init_db()
        logger.info("Database tables created")
    yield
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url=None if settings.is_production() else "/docs",
        redoc_url=None if settings.is_production() else "/redoc",
        lifespan=lifespan,
    )
    app.add_middleware(CORSMiddleware, allow_origins=settings.CORS_ORIGINS, allow_credentials=True,
                       allow_methods=["*"], allow_headers=["*"])
    register_error_handlers(app)

    app.include_router(mock_tests_router, prefix="/v1/mock-tests", tags=["mock-tests"])
    app.include_router(applications_router, prefix="/v1/exam", tags=["exam"])
    app.include_router(admin_router, prefix="/v1/admin", tags=["admin"])

    @app.get("/health", tags=["health"])
    def health():
        return {"status": "ok", "service": settings.APP_NAME, "version": settings.APP_VERSION}

    return app


app = create_app()
