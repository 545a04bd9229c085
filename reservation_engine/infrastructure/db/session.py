# reservation_engine/infrastructure/db/session.py

from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from reservation_engine.config import get_settings


# -----------------------------
# Base Class for Models
# -----------------------------
class Base(DeclarativeBase):
    pass


def build_engine(database_url: str, **kwargs) -> Engine:
    return create_engine(
        database_url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        **kwargs,
    )


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    # Rows are read back after commit by callers outside the session.
    return sessionmaker(
        bind=bind,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


# -----------------------------
# Engine and Session Factory
# -----------------------------
engine: Engine = build_engine(get_settings().database_url)

SessionLocal = build_session_factory(engine)


# -----------------------------
# Unit of work
# -----------------------------
@contextmanager
def session_scope(factory: sessionmaker[Session] = SessionLocal):
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
