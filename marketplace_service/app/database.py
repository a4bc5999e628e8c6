from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from . import config

# Base class for declarative ORM models.
Base = declarative_base()


def make_engine(url=None):
    """Create the SQLAlchemy engine for the given URL (defaults to DATABASE_URL)."""
    url = url or config.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        # In-memory databases live on a single connection.
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine):
    """Create a configured "Session" class bound to the engine."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine):
    """Create database tables defined in models.py if they don't exist."""
    # Imported for its side effect of registering the tables on Base.
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
