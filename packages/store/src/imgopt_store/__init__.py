"""
Persistent state for the image optimizer.

The store owns the conversion queue and the activity log, both kept in one
SQL database (SQLite by default). It is used by the worker only.

Deployment:
    pip install imgopt
    export IMGOPT_DATABASE_URL=sqlite:////var/lib/imgopt/imgopt.db
"""

from .activity import ActivityLog, ActivityLogSink
from .db import DEFAULT_DATABASE_URL, create_db_engine, init_db
from .queue import DEFAULT_MAX_ATTEMPTS, EnqueueReport, QueueStore
from .tables import ActivityLogRecord, QueueJobRecord

__all__ = [
    # Database
    "DEFAULT_DATABASE_URL",
    "create_db_engine",
    "init_db",
    # Queue
    "DEFAULT_MAX_ATTEMPTS",
    "EnqueueReport",
    "QueueStore",
    "QueueJobRecord",
    # Activity log
    "ActivityLog",
    "ActivityLogSink",
    "ActivityLogRecord",
]
