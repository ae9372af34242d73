"""
FastAPI main application for the Pool Designer API
"""
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

# Add api directory to path for imports
api_dir = os.path.dirname(os.path.abspath(__file__))
if api_dir not in sys.path:
    sys.path.insert(0, api_dir)

from core.config import Settings, settings  # noqa: E402
from core.errors import register_error_handlers  # noqa: E402
from core.logging import setup_logging  # noqa: E402
from middleware import RequestLoggingMiddleware  # noqa: E402
from routers import image, subscribe  # noqa: E402
from services.image_generation_service import GeminiImageService  # noqa: E402
from services.klaviyo_service import KlaviyoService  # noqa: E402
from services.rate_limiter import create_rate_limiter  # noqa: E402

logger = logging.getLogger(__name__)


def _preview(secret: str) -> str:
    return f"{secret[:7]}...{secret[-4:]}" if len(secret) > 11 else "***"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared service instances for this process and tear them down on exit"""
    config: Settings = app.state.settings
    logger.info(f"Starting {config.app_name}...")

    logger.info("=" * 60)
    logger.info("ENVIRONMENT VARIABLES CHECK")
    logger.info("=" * 60)

    if config.gemini_api_key:
        logger.info(f"✅ GEMINI_API_KEY is set: {_preview(config.gemini_api_key)}")
    else:
        logger.error("❌ GEMINI_API_KEY is NOT set - image generation will not work!")

    if config.klaviyo_api_key and config.klaviyo_list_id:
        logger.info(f"✅ Klaviyo configured: list {config.klaviyo_list_id}")
    else:
        logger.error("❌ KLAVIYO_PRIVATE_API_KEY / KLAVIYO_LIST_ID NOT set - subscriptions will not work!")

    if config.redis_url:
        logger.info("✅ REDIS_URL is set")
    else:
        logger.warning("⚠️ REDIS_URL is NOT set - rate limits are per process")

    logger.info("=" * 60)

    app.state.image_service = GeminiImageService.from_settings(config)
    app.state.rate_limiter = create_rate_limiter(config)
    app.state.klaviyo_service = KlaviyoService(config)
    logger.info("Application started")

    yield

    logger.info(f"Shutting down {config.app_name}...")
    await app.state.klaviyo_service.close()
    await app.state.rate_limiter.close()
    logger.info("Application stopped")


def create_app(config: Optional[Settings] = None) -> FastAPI:
    config = config or settings
    setup_logging(config)

    app = FastAPI(
        title=config.app_name,
        description="AI Pool Designer API",
        version=config.version,
        lifespan=lifespan,
        docs_url="/docs" if config.environment == "development" else None,
        redoc_url="/redoc" if config.environment == "development" else None,
    )
    app.state.settings = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "X-Request-ID",
        ],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)

    @app.get("/health")
    async def health_check():
        """Health check endpoint for load balancers"""
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "version": config.version,
        }

    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "name": config.app_name,
            "version": config.version,
            "description": "AI Pool Designer API",
            "docs": "/docs" if config.environment == "development" else None,
            "endpoints": {
                "image": "/api/image",
                "subscribe": "/api/subscribe",
            },
        }

    app.include_router(image.router, prefix="/api")
    app.include_router(subscribe.router, prefix="/api")

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_config=None,  # Use our custom logging
        access_log=False,  # We handle this in middleware
    )
