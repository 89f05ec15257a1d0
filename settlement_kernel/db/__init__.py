"""Database layer - engine, base classes, types, and immutability listeners."""

from settlement_kernel.db.base import UUID, Base, TimestampedBase, UTCDateTime, UUIDString
from settlement_kernel.db.engine import (
    create_session_factory,
    create_tables,
    drop_tables,
    init_engine_from_url,
    session_scope,
)
from settlement_kernel.db.types import round_money, to_money

__all__ = [
    "init_engine_from_url",
    "create_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "Base",
    "TimestampedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
    "round_money",
    "to_money",
]
