"""Database module."""

from reportcast.db.base import Base
from reportcast.db.session import async_session_factory, engine

__all__ = ["Base", "async_session_factory", "engine"]
