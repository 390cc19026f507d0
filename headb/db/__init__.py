"""Database layer."""

from headb.db.session import (
    build_engine,
    close_db,
    get_async_session,
    get_session_dependency,
    init_db,
)

__all__ = ["build_engine", "close_db", "get_async_session", "get_session_dependency", "init_db"]
