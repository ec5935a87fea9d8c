"""
AGENTS.md Sync — Managed block inside a project document

The engine owns exactly one marker-delimited region of the target document:

    <!-- agentmem:start v1 -->
    ## Agent Memory
    ...
    <!-- agentmem:end -->

Everything outside the markers is preserved byte-for-byte. The splice works
on raw bytes, so the encoding and line endings of the rest of the file are
never touched. Rendering carries no timestamps: syncing an unchanged store
twice produces an identical document and skips the second write.

Public API:
    render_block(entries, max_items, max_chars) -> (text, selected)
    splice(document, section, path) -> (bytes, action)
    AgentsSyncEngine.sync(entries, path) -> SyncResult
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, List, Tuple, Union

from agentmem.fileio import atomic_write_bytes
from agentmem.store import StorageIOError
from agentmem.types import AgentMemError, MemoryEntry, SyncResult

logger = logging.getLogger(__name__)

START_MARKER = "<!-- agentmem:start v1 -->"
END_MARKER = "<!-- agentmem:end -->"

BLOCK_HEADING = "## Agent Memory"
BLOCK_INTRO = "Durable preferences and project facts recorded by agentmem."
EMPTY_BODY = "No active memories."

_START = START_MARKER.encode("utf-8")
_END = END_MARKER.encode("utf-8")


class SyncMarkerConflict(AgentMemError):
    """The document holds an unusable marker layout; it was left untouched."""

    def __init__(self, path: Union[str, Path], starts: int, ends: int, reason: str = ""):
        self.path = str(path)
        self.starts = starts
        self.ends = ends
        detail = reason or f"{starts} start / {ends} end marker(s)"
        super().__init__(f"Managed block markers in {self.path} are corrupt: {detail}")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _block_order(entries: List[MemoryEntry]) -> List[MemoryEntry]:
    ordered = sorted(entries, key=lambda e: e.id)
    ordered.sort(key=lambda e: e.updated_at, reverse=True)
    ordered.sort(key=lambda e: not e.pinned)
    return ordered


def render_line(entry: MemoryEntry) -> str:
    """One bullet: ``- [category] content`` (``category/pinned`` when pinned)."""
    tag = f"{entry.category}/pinned" if entry.pinned else entry.category
    content = " ".join(entry.content.split())
    return f"- [{tag}] {content}"


def render_block(
    entries: List[MemoryEntry], max_items: int = 10, max_chars: int = 3000,
) -> Tuple[str, int]:
    """Render the managed body. Returns (text, number of entries rendered).

    Pinned entries first, then most recently updated. Lines that would push
    the body past max_chars are skipped so shorter ones can still fit.
    """
    lines = [BLOCK_HEADING, BLOCK_INTRO, ""]
    used = sum(len(line) + 1 for line in lines)
    selected = 0
    for entry in _block_order([e for e in entries if e.status == "active"]):
        if selected >= max_items:
            break
        line = render_line(entry)
        if used + len(line) + 1 > max_chars:
            continue
        lines.append(line)
        used += len(line) + 1
        selected += 1
    if selected == 0:
        lines.append(EMPTY_BODY)
    return "\n".join(lines), selected


def render_section(body: str) -> str:
    """Wrap a rendered body in the marker pair."""
    return f"{START_MARKER}\n{body}\n{END_MARKER}"


# ---------------------------------------------------------------------------
# Splicing
# ---------------------------------------------------------------------------


def splice(document: bytes, section: bytes, path: Union[str, Path] = "") -> Tuple[bytes, str]:
    """Insert or replace the managed section in document bytes.

    Returns (new document, action) where action is "inserted" or "replaced".

    Raises:
        SyncMarkerConflict: duplicated, orphaned or reversed markers.
    """
    starts = document.count(_START)
    ends = document.count(_END)

    if starts == 0 and ends == 0:
        if not document:
            return section + b"\n", "inserted"
        sep = b"" if document.endswith(b"\n") else b"\n"
        return document + sep + b"\n" + section + b"\n", "inserted"

    if starts == 1 and ends == 1:
        begin = document.index(_START)
        end = document.index(_END)
        if end < begin:
            raise SyncMarkerConflict(path, starts, ends, "end marker precedes start marker")
        return document[:begin] + section + document[end + len(_END):], "replaced"

    raise SyncMarkerConflict(path, starts, ends)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AgentsSyncEngine:
    """Writes the managed block; one sync at a time per document."""

    def __init__(self, max_items: int = 10, max_chars: int = 3000):
        self.max_items = max_items
        self.max_chars = max_chars
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, path: Path) -> threading.Lock:
        key = str(path)
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def sync(self, entries: List[MemoryEntry], path: Union[str, Path]) -> SyncResult:
        """Render entries into the managed block of the document at path.

        The path must already be validated by the workspace guard.

        Raises:
            SyncMarkerConflict: the document's markers are corrupt.
            StorageIOError: the document cannot be read or written.
        """
        target = Path(path)
        body, selected = render_block(entries, self.max_items, self.max_chars)
        section = render_section(body).encode("utf-8")

        with self._lock_for(target):
            try:
                current = target.read_bytes() if target.exists() else b""
            except OSError as e:
                raise StorageIOError(f"Cannot read {target}: {e}") from e

            updated, action = splice(current, section, target)
            if updated == current:
                logger.debug("Managed block in %s already up to date", target)
                return SyncResult(
                    path=str(target), changed=False, action="unchanged", selected=selected,
                )
            try:
                atomic_write_bytes(target, updated)
            except OSError as e:
                raise StorageIOError(f"Cannot write {target}: {e}") from e

        logger.info("Managed block %s in %s (%d entries)", action, target, selected)
        return SyncResult(path=str(target), changed=True, action=action, selected=selected)
