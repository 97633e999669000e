import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rentalhub.config import Settings
from rentalhub.container import Services, build_services
from rentalhub.error_handlers import register_exception_handlers
from rentalhub.logging_config import configure_logging
from rentalhub.routers import auth, devices, health

LOGGER = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None, services: Optional[Services] = None
) -> FastAPI:
    """Build the API; run with ``uvicorn rentalhub.main:create_app --factory``."""
    if services is not None:
        settings = services.settings
    elif settings is None:
        settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    if services is None:
        services = build_services(settings)

    app = FastAPI(title="RentalHub Backend")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/api")
    app.include_router(auth.router, prefix="/api")
    app.include_router(devices.router, prefix="/api")
    app.include_router(devices.ws_router)
    register_exception_handlers(app)

    @app.on_event("startup")
    def startup() -> None:
        services.database.init_db()
        LOGGER.info(
            "RentalHub started env=%s token_transport=%s",
            settings.environment,
            settings.token_transport,
        )

    @app.on_event("shutdown")
    def shutdown() -> None:
        services.database.dispose()

    @app.get("/")
    def root():
        return {"status": "Backend running"}

    return app
