import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from reportflow.api.routes import health, schedules
from reportflow.core.config import get_settings
from reportflow.core.logging import configure_logging
from reportflow.core.scheduler_manager import start_scheduler, stop_scheduler
from reportflow.database.connection import Base, engine
import reportflow.database.models.models  # noqa: F401

logger = logging.getLogger(__name__)


async def wait_for_db_connection(retries: int = 10, delay_seconds: float = 3) -> None:
    """Retry database connection to handle startup ordering in containers."""
    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            logger.info("Database connection established.")
            return
        except OperationalError as exc:
            if attempt == retries:
                logger.exception("Database unavailable after %s attempts.", retries)
                raise
            logger.info(
                "Database not ready (attempt %s/%s): %s. Retrying in %.1fs.",
                attempt,
                retries,
                exc,
                delay_seconds,
            )
            await asyncio.sleep(delay_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    await wait_for_db_connection()
    Base.metadata.create_all(bind=engine)
    await start_scheduler()
    yield
    # Shutdown
    await stop_scheduler()


settings = get_settings()

app = FastAPI(
    title="Reportflow Scheduling API",
    version=settings.backend_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(schedules.router)
