import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from wildspot.api import health, images
from wildspot.api.dependencies import close_services
from wildspot.auth.dependencies import close_identity_provider
from wildspot.config import settings
from wildspot.core.exceptions import ImageStoreError
from wildspot.database import init_db, close_db
from wildspot.middleware.logging import LoggingMiddleware
from wildspot.middleware.monitoring import MonitoringMiddleware
from wildspot.middleware.request_id import RequestIDLogFilter, RequestIDMiddleware
from wildspot.middleware.security import SecurityHeadersMiddleware
from wildspot.monitoring import metrics


def configure_logging():
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDLogFilter())
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
        handlers=[handler],
    )


configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started ({settings.ENVIRONMENT})")
    yield
    await close_services()
    await close_identity_provider()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Content-addressed photo store for wildlife sightings.

    * Uploads are deduplicated by SHA-256: the same bytes always get the same id
    * Images are served back by id with their original content type
    * Mutating calls require a bearer token from the identity provider
    """,
    version=settings.APP_VERSION,
    openapi_tags=[
        {"name": "images", "description": "Upload, fetch, delete and identify images"},
        {"name": "health", "description": "Liveness and dependency checks"},
        {"name": "monitoring", "description": "System monitoring"},
    ],
    docs_url="/docs",
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# =====================================
# Error handlers
# =====================================
@app.exception_handler(ImageStoreError)
async def image_store_error_handler(request: Request, exc: ImageStoreError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message},
    )


# =====================================
# Configure Middleware Stack
# =====================================

# Trusted Host validation (production only)
if not settings.DEBUG:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.ALLOWED_HOSTS
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

# Custom middleware
app.add_middleware(MonitoringMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)

# Include routers
app.include_router(images.router, prefix="/images", tags=["images"])
app.include_router(health.router, prefix="/health", tags=["health"])

# Monitoring endpoints (internal use)
if settings.EXPOSE_METRICS:
    app.include_router(
        metrics.router,
        prefix="/internal",
        tags=["monitoring"]
    )
