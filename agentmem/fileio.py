"""
All-or-nothing file replacement.

Content is written to a temporary file in the destination directory,
flushed to disk, then swapped into place with os.replace(). A failure at
any point leaves the previous file untouched.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


def atomic_write_bytes(path: Union[str, Path], data: bytes) -> None:
    """Atomically replace path with data."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent),
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if target.exists():
            os.chmod(tmp_name, target.stat().st_mode & 0o7777)
        else:
            os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    logger.debug("Wrote %d bytes to %s", len(data), target)


def atomic_write_text(path: Union[str, Path], text: str) -> None:
    """Atomically replace path with UTF-8 text."""
    atomic_write_bytes(path, text.encode("utf-8"))
