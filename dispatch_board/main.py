"""
FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dispatch_board.api.routes import api_router
from dispatch_board.api.routes.dispatch import broadcast_snapshot
from dispatch_board.core.config import settings
from dispatch_board.core.exceptions import ConfigurationException, register_exception_handlers
from dispatch_board.core.logging import RequestLoggingMiddleware, setup_logging
from dispatch_board.core.metrics import PrometheusMiddleware, metrics_endpoint
from dispatch_board.core.sentry import init_sentry
from dispatch_board.services.approval import InMemoryApprovalService
from dispatch_board.services.board import BoardRegistry
from dispatch_board.services.realtime.change_feed import create_change_feed
from dispatch_board.services.workflow import WorkflowEngine
from dispatch_board.stores.memory import (
    InMemoryAlertSink,
    InMemoryAuditSink,
    InMemoryClientStore,
    InMemoryDeliveryStore,
    InMemoryPurchaseOrderStore,
    InMemoryTruckStore,
)
from dispatch_board.stores.rest import (
    BackendClient,
    RestAlertSink,
    RestApprovalService,
    RestAuditSink,
    RestClientStore,
    RestDeliveryStore,
    RestPurchaseOrderStore,
    RestTruckStore,
)

# Setup logging
setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=not settings.DEBUG,
)

logger = logging.getLogger(__name__)

# Initialize Sentry error tracking (no-op without SENTRY_DSN)
init_sentry()


@dataclass
class Components:
    """Stores and services the HTTP layer runs on."""

    deliveries: Any
    trucks: Any
    clients: Any
    purchase_orders: Any
    audit: Any
    alerts: Any
    approvals: Any
    feed: Any = None
    backend: Optional[BackendClient] = None
    closeables: list = field(default_factory=list)


def build_components(store_backend: Optional[str] = None) -> Components:
    """Wire stores for ``STORE_BACKEND`` and the change feed for ``CHANGE_FEED``."""
    backend_kind = store_backend or settings.STORE_BACKEND
    feed = create_change_feed()
    closeables = [feed] if hasattr(feed, "close") else []

    if backend_kind == "memory":
        alerts = InMemoryAlertSink()
        return Components(
            deliveries=InMemoryDeliveryStore(),
            trucks=InMemoryTruckStore(),
            clients=InMemoryClientStore(),
            purchase_orders=InMemoryPurchaseOrderStore(),
            audit=InMemoryAuditSink(),
            alerts=alerts,
            approvals=InMemoryApprovalService(alerts=alerts),
            feed=feed,
            closeables=closeables,
        )

    backend = BackendClient()
    alerts = RestAlertSink(backend)
    return Components(
        deliveries=RestDeliveryStore(backend),
        trucks=RestTruckStore(backend),
        clients=RestClientStore(backend),
        purchase_orders=RestPurchaseOrderStore(backend),
        audit=RestAuditSink(backend),
        alerts=alerts,
        approvals=RestApprovalService(backend, alerts=alerts),
        feed=feed,
        backend=backend,
        closeables=closeables + [backend],
    )


def create_app(components: Optional[Components] = None) -> FastAPI:
    """Create and configure FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        logger.info("Starting application...")
        try:
            settings.validate_production_settings()
        except ValueError as e:
            raise ConfigurationException(message=str(e))

        parts = components or build_components()
        engine = WorkflowEngine(
            deliveries=parts.deliveries,
            purchase_orders=parts.purchase_orders,
            audit=parts.audit,
            alerts=parts.alerts,
            approvals=parts.approvals,
        )
        app.state.components = parts
        app.state.approvals = parts.approvals
        app.state.registry = BoardRegistry(
            deliveries=parts.deliveries,
            trucks=parts.trucks,
            clients=parts.clients,
            engine=engine,
            feed=parts.feed,
            on_snapshot=broadcast_snapshot,
        )
        await app.state.registry.start()

        logger.info("Application started successfully")
        yield
        # Shutdown
        logger.info("Shutting down application...")
        await app.state.registry.stop_all()
        for resource in parts.closeables:
            await resource.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Delivery dispatch board for the concrete plant",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        lifespan=lifespan,
    )

    # Standardized exception handlers (must be registered first)
    register_exception_handlers(app)

    # Prometheus metrics middleware
    if settings.METRICS_ENABLED:
        app.add_middleware(PrometheusMiddleware)

    # Request logging middleware
    app.add_middleware(RequestLoggingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API router
    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    # Metrics endpoint (outside API prefix)
    if settings.METRICS_ENABLED:
        app.add_api_route(
            settings.METRICS_PATH,
            metrics_endpoint,
            methods=["GET"],
            include_in_schema=False,
        )

    logger.info(f"Application configured: {settings.APP_NAME} v{settings.APP_VERSION}")

    return app


app = create_app()
