"""
Database module.
Contains database connection, models, and repository implementations.
"""

from analysis_queue.db.connection import (
    close_db,
    create_engine_for_url,
    create_schema,
    create_session_factory,
    get_async_session,
    get_engine,
    get_session_context,
    init_db,
)
from analysis_queue.db.models import Base, Job, JobLog

__all__ = [
    "get_async_session",
    "get_session_context",
    "get_engine",
    "create_engine_for_url",
    "create_session_factory",
    "create_schema",
    "init_db",
    "close_db",
    "Job",
    "JobLog",
    "Base",
]
