import os
import time
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from kbsync.config import settings
from kbsync.core.logging import get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)

# Connection Pool Configuration (ignored for SQLite)
POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "40"))
POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))
POOL_PRE_PING = os.getenv("DB_POOL_PRE_PING", "true").lower() == "true"


def create_db_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine for the chunk, job and option stores.

    PostgreSQL gets a pooled engine; SQLite gets a plain one that can be
    shared across threads.
    """
    url = database_url or settings.database_url

    if url.startswith("sqlite"):
        engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
        logger.info("database_engine_configured", backend="sqlite")
        return engine

    engine = create_engine(
        url,
        echo=echo,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_pre_ping=POOL_PRE_PING,
        pool_recycle=POOL_RECYCLE,
    )
    logger.info(
        "database_engine_configured",
        backend=engine.dialect.name,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=POOL_PRE_PING,
    )
    return engine


def init_db(engine: Engine, max_retries: int = 5, retry_delay: float = 2.0):
    """Create all kbsync tables, retrying while the database comes up."""
    for attempt in range(1, max_retries + 1):
        try:
            logger.info("connecting_to_database", attempt=attempt)

            # Register tables
            from kbsync import schema  # noqa: F401

            SQLModel.metadata.create_all(engine)
            logger.info("database_initialized", status="success")
            return
        except Exception as e:
            logger.error("database_connection_failed", error=str(e), attempt=attempt)
            if attempt < max_retries:
                logger.info("retrying_connection", delay=retry_delay)
                time.sleep(retry_delay)
            else:
                logger.critical("initialization_failed")
                raise
