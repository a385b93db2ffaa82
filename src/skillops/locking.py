"""Exclusive run lock for the managed tree."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from skillops.errors import PipelineBusy

logger = logging.getLogger(__name__)

LOCK_NAME = ".skillops.lock"


@contextmanager
def run_lock(directory: Path, run_id: str) -> Iterator[Path]:
    """Hold ``directory/.skillops.lock`` for the duration of one pipeline run."""
    directory.mkdir(parents=True, exist_ok=True)
    lock_path = directory / LOCK_NAME
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError as exc:
        holder = ""
        try:
            holder = json.loads(lock_path.read_text()).get("run_id", "")
        except (OSError, ValueError):
            holder = ""
        raise PipelineBusy(
            f"another run holds {lock_path}" + (f" ({holder})" if holder else "")
        ) from exc
    with os.fdopen(fd, "w") as handle:
        handle.write(
            json.dumps(
                {
                    "run_id": run_id,
                    "pid": os.getpid(),
                    "acquired_at": datetime.now(UTC).isoformat(),
                }
            )
        )
    try:
        yield lock_path
    finally:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            logger.warning("Run lock %s vanished before release", lock_path)
