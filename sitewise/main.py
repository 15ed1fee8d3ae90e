from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from sitewise.modules.billing.api.v1.webhooks import router as billing_webhook_router
from sitewise.modules.billing.domain.config import load_billing_provider_config
from sitewise.shared.core.config import get_settings
from sitewise.shared.core.exceptions import SiteWiseException
from sitewise.shared.core.logging import setup_logging
from sitewise.shared.db.session import get_db

# Configure logging
setup_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("app_starting", app=settings.APP_NAME, environment=settings.ENVIRONMENT)

    # Fail fast on missing provider secrets before accepting webhooks.
    billing_config = load_billing_provider_config(settings)
    app.state.billing_provider = billing_config.active_provider

    yield

    logger.info("app_stopping", app=settings.APP_NAME)


settings = get_settings()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)

Instrumentator().instrument(app).expose(app)


@app.exception_handler(SiteWiseException)
async def sitewise_exception_handler(request: Request, exc: SiteWiseException):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.warning("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message, "details": exc.details},
    )


@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Liveness plus a database round-trip."""
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.error("health_check_database_failed", error=str(e))
        database = "unavailable"
    status = "healthy" if database == "ok" else "degraded"
    return {"status": status, "app": settings.APP_NAME, "version": settings.VERSION, "database": database}


app.include_router(billing_webhook_router, prefix="/billing")
