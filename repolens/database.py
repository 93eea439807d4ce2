"""Database engine, session factory and schema creation.

The job store is written from worker threads (``asyncio.to_thread``) while
request handlers read from the event loop thread, so SQLite connections are
shared across threads and wait on the write lock instead of failing fast.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from .core.config import settings

DATABASE_URL = settings.database_url

SQLITE_BUSY_TIMEOUT_SECONDS = 30


if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
    )

    # Enforce the job_chats -> analysis_jobs foreign key and let readers
    # proceed while a stage update holds the write lock.
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """Create the analysis_jobs and job_chats tables if they do not exist."""
    from . import models  # noqa: F401  registers mappers on Base.metadata
    Base.metadata.create_all(bind=engine)


def get_db():
    """Request-scoped session for endpoints that query the database directly.

    Rolls back on unhandled exceptions so the connection goes back to the
    pool clean.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
