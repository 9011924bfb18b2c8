import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from authscan.config import (
    logger, cors_origins, SERVER_HOST, SERVER_PORT, APP_NAME, APP_VERSION, APP_DESCRIPTION,
    APP_DEBUG, ZAP_AUTH_URL, ZAP_AUTH_API_KEY, ZAP_HOST_HEADER, ZAP_TIMEOUT, ZAP_MAX_CONNECTIONS,
    SESSION_HANDLE_TTL_HOURS, SESSION_PURGE_INTERVAL, SHUTDOWN_GRACE_SECONDS, TRUST_USER_HEADER,
    ScanSettings,
)
from authscan.blob_store import BlobStore
from authscan.database import get_db
from authscan.limiter import limiter
from authscan.routers import include_routers
from authscan.services.auth_scan import AuthScanService
from authscan.session_store import CookieHandleStore
from authscan.zap_client import ZapClient


async def build_service() -> AuthScanService:
    """Wire the database, engine client, blob store and handle store."""
    db = await get_db()
    client = ZapClient(
        ZAP_AUTH_URL,
        api_key=ZAP_AUTH_API_KEY,
        timeout=ZAP_TIMEOUT,
        host_header=ZAP_HOST_HEADER,
        max_connections=ZAP_MAX_CONNECTIONS,
    )
    return AuthScanService(
        db=db,
        client=client,
        blob_store=BlobStore(db),
        handle_store=CookieHandleStore(db, ttl_hours=SESSION_HANDLE_TTL_HOURS),
        settings=ScanSettings.from_config(),
    )


async def purge_expired_handles(store: CookieHandleStore, interval: float):
    """Periodically drop expired session cookie handles."""
    while True:
        await asyncio.sleep(interval)
        try:
            await store.purge_expired()
        except Exception as e:
            logger.error(f"Session handle purge failed: {e}")


def create_app(
    service: Optional[AuthScanService] = None, trust_user_header: Optional[bool] = None
) -> FastAPI:
    """Build the FastAPI app; pass `service` to reuse pre-wired collaborators."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire the service on startup; drain running scans on shutdown."""
        logger.info(f"Starting up {APP_NAME} {APP_VERSION}...")
        svc = service or await build_service()
        app.state.auth_scan_service = svc
        purge_task = asyncio.create_task(
            purge_expired_handles(svc.handle_store, SESSION_PURGE_INTERVAL)
        )
        try:
            yield
        finally:
            purge_task.cancel()
            await asyncio.gather(purge_task, return_exceptions=True)
            await svc.shutdown(SHUTDOWN_GRACE_SECONDS)
            if service is None:
                await svc.client.close()
            logger.info("Shutdown complete")

    app = FastAPI(
        title=APP_NAME,
        description=APP_DESCRIPTION,
        version=APP_VERSION,
        lifespan=lifespan
    )

    app.state.trust_user_header = TRUST_USER_HEADER if trust_user_header is None else trust_user_header

    # Rate Limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Middleware - CORS with origins from config
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-User-Id"],
    )

    # Security Headers Middleware
    @app.middleware("http")
    async def add_security_headers(request, call_next):
        """API responses are never framed or cached."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response

    include_routers(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("authscan.app:app", host=SERVER_HOST, port=SERVER_PORT, reload=APP_DEBUG)
