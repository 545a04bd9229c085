import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from reservation_engine.api.routes.routes import router
from reservation_engine.config import get_settings
from reservation_engine.infrastructure.db.session import engine
from reservation_engine.infrastructure.db.models import Base

app = FastAPI(title="Travel Reservation Engine")

app.include_router(router)
logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _wait_for_db() -> None:
    # Handles the common case where API starts before Postgres is ready.
    settings = get_settings()
    max_retries = settings.db_connect_max_retries
    retry_delay_seconds = settings.db_connect_retry_delay

    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable.")
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL and Postgres status.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


@app.on_event("startup")
def on_startup() -> None:
    configure_logging(get_settings().log_level)
    _wait_for_db()
    Base.metadata.create_all(bind=engine)
