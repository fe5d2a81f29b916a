"""
Database connection and session management.

Provides:
- create_session_factory(): Build an engine + session factory for a URL
- get_session_factory(): Process-wide factory built from DATABASE_URL
- get_db(): Context manager for DB sessions
"""

import os
from contextlib import contextmanager
from typing import Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

load_dotenv()

_session_factory: Optional[sessionmaker] = None


def normalize_database_url(url: str) -> str:
    """Fix Heroku/Railway style postgres:// URLs for SQLAlchemy."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker:
    """
    Create engine and session factory for a database URL.

    pool_pre_ping=True ensures connections are valid before using them.
    SQLite connections may be used from executor threads.
    """
    url = normalize_database_url(database_url)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, pool_pre_ping=True, echo=echo, connect_args=connect_args)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_session_factory() -> sessionmaker:
    """
    Process-wide session factory built from DATABASE_URL.

    Raises:
        ValueError: If DATABASE_URL is not set
    """
    global _session_factory

    if _session_factory is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable not set. "
                "Please configure it in .env file."
            )
        _session_factory = create_session_factory(database_url)

    return _session_factory


@contextmanager
def get_db(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Usage:
        with get_db() as db:
            execution = db.get(ProjectExecution, 1)
            db.commit()

    The session is closed when exiting the context, and rolled back if an
    exception occurs.
    """
    db = (session_factory or get_session_factory())()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
