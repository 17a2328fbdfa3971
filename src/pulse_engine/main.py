"""DevPulse Engine - Main FastAPI Application."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pulse_engine.api.v1.router import api_router
from pulse_engine.core.config import Settings, get_settings
from pulse_engine.core.context import AppContext

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or (context.settings if context else get_settings())
    context = context or AppContext.create(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger.info("Starting %s v%s", settings.APP_NAME, settings.VERSION)

        await context.start()
        logger.info("Database initialized, job manager started")

        yield

        logger.info("Shutting down %s...", settings.APP_NAME)
        await context.stop()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        description="Repository analysis and autonomous fix backend",
        version=settings.VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )
    app.state.context = context

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.DEBUG else settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            f"{'.'.join(str(p) for p in e.get('loc', ()) if p != 'body')}: {e.get('msg')}"
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={"success": False, "error": "Invalid request", "details": errors},
        )

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "services": {
                "database": True,
                "jobs": context.job_manager.stats(),
            },
        }

    # Include API router
    app.include_router(api_router, prefix="/v1")

    return app


def main():
    """Run the application."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "pulse_engine.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info",
    )


if __name__ == "__main__":
    main()
