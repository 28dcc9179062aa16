"""Database layer - engine, base classes, types, and transaction boundary."""

from sales_kernel.db.base import UUID, Base, DecimalString, TrackedBase, UTCDateTime, UUIDString
from sales_kernel.db.engine import (
    build_engine,
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)
from sales_kernel.db.unit_of_work import UnitOfWork

__all__ = [
    "build_engine",
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "drop_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "DecimalString",
    "UTCDateTime",
    "UUID",
    "UnitOfWork",
]
