"""FastAPI application factory and configuration."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import request_logging_middleware
from api.exceptions import register_exception_handlers
from api.routes import health, payments, webhooks
from db.db import init_db
from payment_resilience.config import Settings
from payment_resilience.container import PaymentServices
from payment_resilience.version import __version__


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Services injected by the caller are started and stopped by the caller
    if getattr(app.state, "services", None) is not None:
        yield
        return

    settings = Settings.from_env()
    services = PaymentServices.build(settings)
    if services.engine is not None and not settings.is_production:
        await init_db(services.engine)

    app.state.services = services
    await services.start()
    try:
        yield
    finally:
        await services.stop()
        app.state.services = None


def create_app(services: Optional[PaymentServices] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Prebuilt service container; built from the environment
            on startup when omitted

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="Payment Resilience API",
        version=__version__,
        description="Idempotent payment initiation and gateway notification handling",
        lifespan=lifespan
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.middleware("http")(request_logging_middleware)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(payments.router)
    app.include_router(webhooks.router)

    return app
