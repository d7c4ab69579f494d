"""
Database module.
Contains database connection, models, the job store and worker leases.
"""

from image_queue.db.connection import (
    close_db,
    create_schema,
    get_async_session,
    get_engine,
    get_session_context,
    init_db,
)
from image_queue.db.lease import LeaseCoordinator
from image_queue.db.models import Base, Job, WorkerLease
from image_queue.db.repository import JobStore

__all__ = [
    "get_async_session",
    "get_session_context",
    "get_engine",
    "init_db",
    "create_schema",
    "close_db",
    "Job",
    "WorkerLease",
    "Base",
    "JobStore",
    "LeaseCoordinator",
]
