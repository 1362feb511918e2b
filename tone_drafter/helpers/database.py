# tone_drafter/helpers/database.py
"""Database session helpers for workers and services.

The engine is dialect-aware (SQLite for development, PostgreSQL with a
connection pool for multi-worker deployments) and cached per process.
"""

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from tone_drafter import config, models

_engine = None
_SessionLocal = None


def _get_engine():
    """Get or create SQLAlchemy engine (cached).

    SQLite: check_same_thread/timeout connect_args plus FK and WAL pragmas
    PostgreSQL: connection pooling for parallel workers
    """
    global _engine
    if _engine is None:
        database_url = config.get_database_url()

        if database_url.startswith("sqlite"):
            _engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30.0},
            )

            @event.listens_for(_engine, "connect")
            def _sqlite_pragmas(dbapi_conn, connection_record):
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout = 5000")
                cursor.close()
        else:
            _engine = create_engine(
                database_url,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                pool_pre_ping=True,
                connect_args={"connect_timeout": config.get_db_connect_timeout()},
            )
    return _engine


def get_session_factory():
    """Get or create the SQLAlchemy session factory (cached).

    Usage in Celery tasks:
        SessionFactory = get_session_factory()
        with SessionFactory() as db:
            ...
    """
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=_get_engine())
    return _SessionLocal


def init_schema():
    """Create all tables on the configured database (idempotent)."""
    models.Base.metadata.create_all(_get_engine())


@contextmanager
def get_db_session():
    """Context manager for database sessions.

    Yields:
        SQLAlchemy session that auto-closes on exit
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def get_email_account(session, account_id: int, user_id: int):
    """Get email account with ownership validation.

    Returns None if the account doesn't belong to the specified user.
    """
    return session.query(models.EmailAccount).filter_by(
        id=account_id,
        user_id=user_id  # Ownership Check
    ).first()


def get_inbound_message(session, account_id: int, message_id: str, user_id: int):
    """Get an inbound message by its Message-ID with ownership validation."""
    return session.query(models.InboundMessage).filter_by(
        email_account_id=account_id,
        message_id=message_id,
        user_id=user_id
    ).first()
