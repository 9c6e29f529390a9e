"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysync.api.v1.router import api_router
from paysync.config import settings
from paysync.core.background_tasks import start_idempotency_sweeper
from paysync.core.exceptions import COARSE_MESSAGE, AppException, DuplicateEvent
from paysync.core.idempotency import IdempotencyStore, build_idempotency_store
from paysync.core.immutability import register_immutability_enforcement
from paysync.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from paysync.database import async_session_maker, close_db, init_db
from paysync.services.gateway_service import GatewayService
from paysync.services.notification_service import NotificationService
from paysync.services.reconciliation_service import ReconciliationEngine
from paysync.services.transaction_manager import ConsistencyTransactionManager

logger = logging.getLogger(__name__)


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once per process."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan events."""
    # Startup
    if settings.debug:
        await init_db()

    sweeper = asyncio.create_task(start_idempotency_sweeper(app.state.idempotency_store))

    yield

    # Shutdown
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass

    await app.state.manager.notifier.drain()
    await app.state.idempotency_store.close()
    await close_db()


def _is_staff_request(request: Request) -> bool:
    actor = getattr(request.state, "actor", None)
    return bool(actor and actor.is_staff)


def create_application(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    idempotency_store: IdempotencyStore | None = None,
    gateways: GatewayService | None = None,
    notifier: NotificationService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The idempotency store, transaction manager and reconciliation engine are
    built once here and shared through ``app.state``.
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="PaySync - Booking/Payment Consistency Engine API",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    register_immutability_enforcement()

    session_factory = session_factory or async_session_maker
    store = idempotency_store or build_idempotency_store()
    manager = ConsistencyTransactionManager(
        session_factory,
        store,
        notifier=notifier,
        gateways=gateways,
    )
    app.state.session_factory = session_factory
    app.state.idempotency_store = store
    app.state.manager = manager
    app.state.reconciliation = ReconciliationEngine(session_factory, manager, audit=manager.audit)

    # Exception handlers
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        """Full diagnostic for staff, coarse message for everyone else."""
        if isinstance(exc, DuplicateEvent):
            return JSONResponse(status_code=200, content=exc.result)

        if _is_staff_request(request):
            content = {"detail": exc.detail, "diagnostic": exc.diagnostic()}
        else:
            content = {"detail": exc.public_detail, "code": exc.code}
        if exc.public_detail == COARSE_MESSAGE:
            logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content=content,
            headers=exc.headers,
        )

    # Middleware (order matters - first added = last executed)
    # 1. Security headers (outermost)
    app.add_middleware(SecurityHeadersMiddleware)

    # 2. Request logging
    app.add_middleware(RequestLoggingMiddleware)

    # 3. CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 4. Gzip compression (innermost)
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Include API routes
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "idempotency_backend": settings.idempotency_backend,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get("/")
    async def root() -> dict:
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs" if settings.debug else None,
        }

    return app


configure_logging()
app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "paysync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
