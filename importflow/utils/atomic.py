"""Atomic file writes for record persistence.

Records are rewritten in place by both the state machine and background
workers, so a reader must never observe a half-written file.
"""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from importflow.utils.logging import get_logger

logger = get_logger("utils.atomic")


class AtomicWriteError(OSError):
    """Raised when an atomic write operation fails."""

    pass


@contextmanager
def atomic_write(
    path: Path,
    encoding: str = "utf-8",
) -> Generator[Any, None, None]:
    """
    Write a text file through a temp file and an atomic rename.

    Args:
        path: Target file path
        encoding: Text encoding

    Yields:
        File handle for writing

    Raises:
        AtomicWriteError: If the write or rename fails
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_name = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    temp_path = Path(temp_name)
    success = False

    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())

        temp_path.replace(path)
        success = True
        logger.debug("atomic_write_success", path=str(path))

    except OSError as e:
        logger.error("atomic_write_failed", path=str(path), error=str(e))
        raise AtomicWriteError(f"Failed to atomically write {path}: {e}") from e

    finally:
        if not success and temp_path.exists():
            temp_path.unlink()


def atomic_write_json(
    path: Path,
    data: Any,
    indent: int = 2,
) -> None:
    """
    Atomically write JSON data to a file.

    Args:
        path: Target file path
        data: Data to serialize as JSON
        indent: JSON indentation level
    """
    with atomic_write(path) as f:
        json.dump(data, f, indent=indent, default=str)
