"""
Database connection management.

Provides SQLite connections and the timestamp/decimal column codecs shared
by the repository.
"""

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

DEFAULT_DB_PATH = "usage_engine.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Rows come back as ``sqlite3.Row`` so columns can be read by name.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def to_db_timestamp(value: datetime) -> str:
    """Encode a datetime as a fixed-width UTC ISO string.

    Every timestamp column uses the same width and offset so that range
    filters can compare the stored text directly. Naive datetimes are
    taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def to_db_decimal(value: Decimal) -> str:
    return str(value)


def from_db_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(value)
