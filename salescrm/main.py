from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from salescrm.api.routes import router as api_router
from salescrm.core.config import get_settings
from salescrm.core.database import Base, engine
from salescrm.logging import configure_logging
from salescrm.middleware.correlation_id import CorrelationIdMiddleware
from salescrm.middleware.request_logging import RequestLoggingMiddleware
from salescrm.otel import get_fastapi_server_request_hook, setup_otel

# registers the ORM tables on Base.metadata
from salescrm.crm import models as _models  # noqa: F401


configure_logging()
logger = logging.getLogger("salescrm.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.create_tables_on_startup:
        Base.metadata.create_all(bind=engine)
    logger.info("system.started", extra={"service": settings.app_name, "environment": settings.app_env})
    yield


app = FastAPI(title="Sales CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("salescrm-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
