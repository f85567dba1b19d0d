from fastapi import FastAPI

from app.medstock.api import api_router
from app.medstock.core.config import settings
from app.medstock.core.errors import setup_exception_handlers
from app.medstock.core.logging import configure_logging
from app.medstock.middleware.observability import ObservabilityMiddleware
from app.medstock.middleware.organization import OrganizationContextMiddleware
from app.medstock.middleware.trace import TraceIdMiddleware


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=settings.APP_NAME)
    app.add_middleware(OrganizationContextMiddleware)
    app.add_middleware(TraceIdMiddleware)
    app.add_middleware(ObservabilityMiddleware)
    setup_exception_handlers(app)
    app.include_router(api_router)
    return app


app = create_app()
