"""Database session management with connection pooling"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from lending_core.config import settings

# Connection pool: max 20 connections, recycle after 1 hour to avoid stale connections
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,  # Verify connections before using
    pool_size=10,
    max_overflow=10,
    pool_recycle=3600,
)

# Callers open one session per unit of work and pass it to the services
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """
    Run a block as one transaction on `db`.

    Commits when the block completes; on any exception rolls back everything
    the block did (state changes, outbox rows, reservations) and re-raises.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
