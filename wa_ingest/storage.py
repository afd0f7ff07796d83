import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("conversations", "message_log", "status_events")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _connect_args(url: str, timeout_seconds: float) -> dict:
    """Driver arguments bounding how long one storage call may block."""
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        # check_same_thread=False: sessions are used from the threadpool
        return {"check_same_thread": False, "timeout": timeout_seconds}
    if backend == "postgresql":
        return {"options": f"-c statement_timeout={int(timeout_seconds * 1000)}"}
    return {}


class Database:
    """
    Storage access component.

    Constructed once at startup and handed to whatever needs a session, so
    tests can point it at their own database.
    """

    def __init__(self, url: str, timeout_seconds: float = 5.0, echo: bool = False):
        self.url = url
        self.engine = create_engine(
            url,
            connect_args=_connect_args(url, timeout_seconds),
            pool_pre_ping=True,
            echo=echo,
        )
        self.SessionLocal = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def init_db(self) -> None:
        """
        Initialize the database by creating all tables.
        Called during application startup.
        """
        logger.debug(f"Initializing database ({self.dialect})")
        try:
            # Import models to register them with Base.metadata
            from wa_ingest import models  # noqa: F401

            Base.metadata.create_all(bind=self.engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Yield a session and make sure it's closed after use."""
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and all tables exist, False otherwise.
        """
        try:
            with self.session() as db:
                db.execute(text("SELECT 1"))
            existing = set(inspect(self.engine).get_table_names())
            missing = [name for name in REQUIRED_TABLES if name not in existing]
            if missing:
                logger.error(f"Database schema not applied, missing tables: {missing}")
                return False
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
