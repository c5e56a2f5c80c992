from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from config import settings


# Base class for all ORM models
Base = declarative_base()


def make_engine(url: str) -> Engine:
    """
    Build an engine for the given URL.

    SQLite connections are shared across threads (the API runs handlers
    in a threadpool); in-memory SQLite is pinned to a single connection
    so every session sees the same database.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(url, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    # Rows handed out by the stores stay readable after commit
    return sessionmaker(
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
    )


# Create SQLAlchemy engine
engine = make_engine(settings.DATABASE_URL)

# Session factory
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine = engine) -> None:
    # Import registers the tables on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=bind)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal):
    """
    Provide a session and ensure it is closed after use.
    Uncommitted work is rolled back on error.
    """
    db = factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
