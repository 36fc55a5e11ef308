"""FastAPI application entry point."""
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from api.routers import bookmarks, health, users
from core.config import get_settings
from core.redis import RedisClient, set_redis_client
from services.change_feed import ChangeFeed, set_change_feed
from services.exceptions import BookmarkValidationError, StoreError


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifespan - startup and shutdown."""
    app_settings = get_settings()

    # Startup: Connect to Redis (optional; the feed stays in-process without it)
    redis_client = RedisClient(
        url=app_settings.redis_url,
        enabled=app_settings.redis_enabled,
        pool_size=app_settings.redis_pool_size,
    )
    await redis_client.connect()
    set_redis_client(redis_client)

    # Startup: Start the realtime change feed
    feed = ChangeFeed(
        redis_client,
        channel_prefix=app_settings.realtime_channel_prefix,
        queue_size=app_settings.realtime_queue_size,
    )
    await feed.start()
    set_change_feed(feed)

    yield

    # Shutdown: Close subscriptions, then Redis
    set_change_feed(None)
    await feed.stop()
    await redis_client.close()
    set_redis_client(None)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request and add security headers to response."""
        response = await call_next(request)
        # HSTS: enforce HTTPS for 1 year, including subdomains
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking - API shouldn't be framed
        response.headers["X-Frame-Options"] = "DENY"
        return response


app_settings = get_settings()

app = FastAPI(
    title="Bookmarks API",
    description="A personal bookmark manager with live updates across sessions.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(BookmarkValidationError)
async def validation_exception_handler(
    _request: Request, exc: BookmarkValidationError,
) -> JSONResponse:
    """Missing or invalid bookmark fields."""
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StoreError)
async def store_exception_handler(_request: Request, exc: StoreError) -> JSONResponse:
    """Persistence failures keep the store's message."""
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# Security headers middleware (runs after CORS, adds headers to responses)
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=app_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(users.router)
app.include_router(bookmarks.router)
