"""
SQLAlchemy engine and session setup for the SQL storage backend.

Nothing here is created at import time. The application builds an engine when
STORAGE_BACKEND=sql and hands the session factory to SqlStorage.
"""

import logging
import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# In-memory SQLite by default: data lives only as long as the process
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///:memory:")

Base = declarative_base()


def create_db_engine(url: Optional[str] = None) -> Engine:
    """
    Create an engine for the given URL (defaults to DATABASE_URL).

    In-memory SQLite needs a single shared connection (StaticPool), otherwise
    every pooled connection would see its own empty database.
    """
    url = url or DATABASE_URL
    logger.debug(f"Creating database engine for {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create tables if needed and return a session factory bound to the engine."""
    # Import here so every table is registered on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
