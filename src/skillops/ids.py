"""Identifier helpers."""

from datetime import UTC, datetime
from uuid import uuid4


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def utc_stamp(moment: datetime | None = None) -> str:
    """Compact sortable UTC stamp used in backup directory names."""
    return (moment or datetime.now(UTC)).strftime("%Y%m%dT%H%M%S%fZ")
