"""Append-only session history kept beside the managed tree."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

_HEADER = "# Session log\n"


def append_session_entry(
    path: Path,
    *,
    message: str,
    branch: str,
    when: datetime | None = None,
) -> str:
    stamp = (when or datetime.now(UTC)).strftime("%Y-%m-%d %H:%M UTC")
    entry = f"\n## {stamp} ({branch})\n\n- {message.strip() or 'session changes'}\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        path.write_text(_HEADER)
    with path.open("a") as handle:
        handle.write(entry)
    return entry
