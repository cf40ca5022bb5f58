"""
Database session management.
"""
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from app.core.config import settings
from app.db.base import Base

_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO,
    pool_pre_ping=True,
    pool_recycle=3600,
    connect_args=_connect_args
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Session:
    """Dependency for getting database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """
    Run a unit of work in one transaction.

    Commits when the block exits cleanly. On any exception the transaction is
    rolled back and domain events buffered during the block are discarded, so
    nothing is announced for a state change that never landed.
    """
    from app.services.events import discard_events

    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        discard_events(db)
        raise


def init_db():
    """Initialize database tables."""
    import app.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
