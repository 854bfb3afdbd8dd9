import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.routes import router as api_router
from .core.config import get_settings
from .core.logging import RequestContextMiddleware, configure_logging
from .db.session import Base, engine
from .services.accrual_scheduler import schedule_accrual_engine, stop_accrual_engine

settings = get_settings()

configure_logging(logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


def _ensure_schema() -> None:
    """Create missing tables; existing tables are left untouched."""

    import loyalty.models  # noqa: F401  # register mappers

    Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    """Start the accrual engine on startup and cancel it on shutdown."""

    logger.info("Starting service", extra={"extra": settings.dict_for_logging()})
    _ensure_schema()
    if settings.accrual_enabled:
        schedule_accrual_engine(settings)
    try:
        yield
    finally:
        stop_accrual_engine()


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    debug=settings.debug,
    lifespan=_lifespan,
)

app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)


__all__ = ["app"]
