"""Remote backup store (SQLAlchemy, PostgreSQL in production)."""
from .database import create_engine, create_session_factory, init_db
from .repository import RemoteRepository

__all__ = ["RemoteRepository", "create_engine", "create_session_factory", "init_db"]
