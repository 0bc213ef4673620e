"""Engine, session factory and declarative base shared by all services."""
from contextlib import contextmanager
from typing import Generator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings

settings = get_settings()

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Run one unit of work: commit on success, roll back on any error.

    Domain events queued on the session are published only after the commit.
    """
    from .events import discard_pending_events, flush_pending_events

    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        discard_pending_events(db)
        raise
    flush_pending_events(db)
