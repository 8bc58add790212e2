import logging
from typing import Callable, Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.core.config import settings

logger = logging.getLogger(__name__)

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Log high-signal diagnostics when the application cannot reach the database."""
    logger.warning("Could not connect to database: %s", exc)
    logger.warning("The application will start but database operations will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s); skipping detailed diagnostics.", parse_error)
        return

    logger.warning(
        "Database settings: dialect=%s host=%s port=%s database=%s user=%s",
        url.get_backend_name(),
        url.host or "localhost",
        url.port or "(default)",
        url.database,
        url.username,
    )


def _engine_kwargs(database_url: str) -> dict:
    # Background import jobs open sessions on another thread than the request.
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        kwargs = _engine_kwargs(settings.database_url)
        try:
            _engine = create_engine(settings.database_url, **kwargs)
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            # Callers get an engine either way; operations fail until the database is reachable.
            _engine = create_engine(settings.database_url, **kwargs)
        logger.info("Database engine created for %s", make_url(settings.database_url).get_backend_name())
    return _engine


# Don't create engine at import time
SessionLocal = None

Base = declarative_base()


def get_session_local() -> Callable[[], Session]:
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def init_db(engine: Engine = None) -> None:
    """Create the import pipeline tables on the given (or default) engine."""
    # Importing the models registers them on Base.metadata.
    from app.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


def get_session_factory() -> Callable[[], Session]:
    """FastAPI dependency: session factory for work that outlives the request (background jobs)."""
    return get_session_local()


def get_db() -> Iterator[Session]:
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
