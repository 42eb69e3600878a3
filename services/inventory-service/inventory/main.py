from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .checkout_consumer import start_checkout_consumer
from .database import SessionLocal, engine, init_db
from .logging_config import configure_logging
from .routers import inventory_router
from .services import InventoryServices, build_services

logger = structlog.get_logger(__name__)


def create_app(services: Optional[InventoryServices] = None, *, start_background: bool = True) -> FastAPI:
    app = FastAPI(
        title="Inventory Service",
        description="Stock levels, checkout reservations and warehouse transfers",
        version="1.0.0",
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services
    app.include_router(inventory_router.router)

    @app.on_event("startup")
    def _startup() -> None:
        configure_logging()
        if app.state.services is None:
            app.state.services = build_services(engine, SessionLocal)
        init_db(app.state.services.engine)

        if not start_background:
            return
        if config.REAPER_ENABLED:
            app.state.services.reaper.start()
        if config.CHECKOUT_CONSUMER_ENABLED:
            # Background consumer for order.paid / checkout.abandoned
            start_checkout_consumer(app.state.services.reservations)
        logger.info("inventory_service_started")

    @app.on_event("shutdown")
    def _shutdown() -> None:
        if app.state.services is not None:
            app.state.services.shutdown()

    @app.get("/")
    def root():
        return {
            "service": "Inventory Service",
            "status": "running",
            "version": "1.0.0",
        }

    @app.get("/health")
    def health_check():
        services = app.state.services
        return {
            "status": "healthy",
            "service": "inventory-service",
            "reaper_running": bool(services and services.reaper.running),
        }

    return app


app = create_app()
