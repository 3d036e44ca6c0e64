from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from ..config import get_settings

settings = get_settings()

engine = create_engine(settings.sqlalchemy_url, future=True, echo=False)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
Base = declarative_base()


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run a service unit of work in its own transaction.

    Any implicit transaction left open by earlier reads on the session is
    committed first, so row locks taken inside the block are held only for
    the duration of the block. Commits on success, rolls back on error.
    """
    if db.in_transaction():
        db.commit()
    with db.begin():
        yield db
