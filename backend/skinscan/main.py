"""
SkinScan: Main FastAPI Application
===================================
HTTP surface for the capture pipeline and the Shopify cart relay.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from skinscan.api.v1.router import api_v1_router
from skinscan.core.config import get_settings
from skinscan.core.logging import get_logger, setup_logging
from skinscan.core.redis import close_redis

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown events."""
    # ── Startup ──────────────────────────────────────────────────────────
    setup_logging()
    logger = get_logger("main")
    logger.info("Starting %s (env=%s)", settings.APP_NAME, settings.APP_ENV)
    logger.info("API prefix: %s", settings.API_PREFIX)
    if not settings.SHOPIFY_WEBHOOK_SECRET:
        logger.warning("SHOPIFY_WEBHOOK_SECRET not set: cart webhooks will be rejected")
    if not settings.INFERENCE_API_KEY:
        logger.warning("INFERENCE_API_KEY not set: /infer will return 503")
    logger.info("Cart relay backend: %s", settings.CART_RELAY_BACKEND)

    yield

    # ── Shutdown ─────────────────────────────────────────────────────────
    logger.info("Shutting down %s...", settings.APP_NAME)
    await close_redis()


def describe_validation_errors(errors) -> str:
    """One line per invalid field, e.g. `imageUrl: Field required`."""
    parts = []
    for error in errors:
        # Drop the leading "body"/"query" location segment
        field = ".".join(str(p) for p in error.get("loc", ())[1:])
        msg = error.get("msg", "Invalid value")
        parts.append(f"{field}: {msg}" if field else msg)
    return "; ".join(parts) or "Invalid request"


def create_app() -> FastAPI:
    """Application factory."""
    app = FastAPI(
        title=f"{settings.APP_NAME} API",
        description=(
            "Backend for the SkinScan widget: upload targets and skin analysis "
            "for the capture pipeline, plus storefront cart relay."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── CORS Middleware ──────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials="*" not in settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "X-Cache"],
    )

    # ── Error Handlers ───────────────────────────────────────────────────
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # Clients treat 400 as final; a 422 would be retried
        return JSONResponse(
            status_code=400,
            content={
                "detail": {
                    "error": "Validation Error",
                    "message": describe_validation_errors(exc.errors()),
                    "fields": [
                        {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")}
                        for e in exc.errors()
                    ],
                }
            },
        )

    # ── Routes ───────────────────────────────────────────────────────────
    app.include_router(api_v1_router, prefix=settings.API_PREFIX)

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": f"{settings.API_PREFIX}/health",
        }

    return app


app = create_app()
