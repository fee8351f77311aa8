"""Database engine and session factories."""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.settings import get_settings

_sync_engine = None


def get_sync_engine(url: Optional[str] = None):
    """Get or create the state database engine.

    Passing ``url`` builds a dedicated engine (tests, CLI overrides)
    instead of the cached settings-driven one.
    """
    global _sync_engine
    if url is not None:
        return create_engine(url, pool_pre_ping=True)
    if _sync_engine is None:
        settings = get_settings()
        _sync_engine = create_engine(
            settings.state_db_url,
            pool_pre_ping=True,
        )
    return _sync_engine


def get_sync_session_factory(engine=None):
    return sessionmaker(bind=engine or get_sync_engine(), expire_on_commit=False)
