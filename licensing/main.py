# licensing/main.py
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from licensing.config import Settings, get_settings
from licensing.database import engine
from licensing.errors import LicensingError
from licensing.models import Base
from licensing.routes import admin as admin_router
from licensing.routes import licenses as license_router
from licensing.routes import offline as offline_router
from licensing.routes import webhooks as webhook_router
from licensing.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


async def licensing_error_handler(request: Request, exc: LicensingError):
    if exc.status_code >= 500:
        logger.error("Licensing failure", extra={"code": exc.code.value, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(settings: Settings | None = None) -> FastAPI:
    # misconfiguration is fatal here, not on the first request
    settings = settings or get_settings()

    # create tables if not present (on startup)
    Base.metadata.create_all(bind=engine)

    app = FastAPI(title="Lightlane License Server")
    app.state.settings = settings
    app.state.rate_limiter = RateLimiter(settings.license_rate_limit, settings.license_rate_window_seconds)

    app.add_exception_handler(LicensingError, licensing_error_handler)

    app.include_router(admin_router.router)
    app.include_router(license_router.router)
    app.include_router(offline_router.router)
    app.include_router(webhook_router.router)
    return app


app = create_app()
