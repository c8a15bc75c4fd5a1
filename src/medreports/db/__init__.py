"""Database layer for medreports."""

from medreports.db.base import Base
from medreports.db.session import (
    AsyncSessionLocal,
    engine,
    get_db,
    init_db,
)

__all__ = [
    "Base",
    "AsyncSessionLocal",
    "engine",
    "get_db",
    "init_db",
]
