"""
Memory Engine — One handle over store, config, guard, capture, compaction and sync

A MemoryEngine is bound to exactly one workspace root. Adapters (CLI, MCP
server) build one engine and call its operations; nothing here is global.

    engine = MemoryEngine("/path/to/project")
    engine.add("Use pnpm, not npm", category="preference")
    engine.execute("/memory search pnpm")
    engine.refresh()
    engine.sync_agents()
    engine.close()

Storage defaults to ``<workspace>/.agentmem`` (memory.sqlite, config.json).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from agentmem.agents_sync import AgentsSyncEngine, render_block, render_section
from agentmem.capture import CaptureEngine
from agentmem.commands import HELP_TEXT, Command, encode_cursor, parse
from agentmem.config import DB_FILENAME, ConfigInvalid, ConfigManager
from agentmem.consolidate import CompactionEngine
from agentmem.formatting import (
    export_json,
    export_markdown,
    format_auto_status,
    format_candidates,
    format_compaction,
    format_rows,
    format_search_results,
    format_stats,
    utc_stamp,
)
from agentmem.fileio import atomic_write_text
from agentmem.guard import WorkspaceGuard
from agentmem.llm import RefinementProvider
from agentmem.store import MemoryStore, ScoredEntry, StorageIOError
from agentmem.types import (
    DEFAULT_CATEGORY,
    AddResult,
    CaptureCandidate,
    CompactionResult,
    MemoryEntry,
    SyncResult,
    ValidationError,
)

logger = logging.getLogger(__name__)

STORAGE_DIRNAME = ".agentmem"
EXPORT_EXTENSIONS = {"json": "json", "md": "md"}


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ListPage:
    """One page of list results."""

    entries: List[MemoryEntry]
    total: int
    offset: int = 0
    next_cursor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "total": self.total,
            "offset": self.offset,
            "next_cursor": self.next_cursor,
        }


@dataclass
class RefreshReport:
    """What one refresh did: compaction, store changes, event pruning."""

    compaction: CompactionResult
    applied: Dict[str, int] = field(default_factory=dict)
    events_pruned: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "compaction": self.compaction.to_dict(),
            "applied": dict(self.applied),
            "events_pruned": self.events_pruned,
        }


@dataclass
class CommandOutcome:
    """Result of a ``/memory`` command: display text plus structured data."""

    command: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"command": self.command, "message": self.message, "data": self.data}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MemoryEngine:
    """Memory operations for one workspace."""

    def __init__(
        self,
        workspace: Union[str, Path],
        storage_root: Optional[Union[str, Path]] = None,
        *,
        provider: Optional[RefinementProvider] = None,
    ):
        """Open (and create if needed) the engine's storage.

        Args:
            workspace: Workspace root; every caller-supplied path must stay
                under it.
            storage_root: Directory for memory.sqlite and config.json
                (default: <workspace>/.agentmem).
            provider: Refinement provider for compaction. When None and
                compaction.llm_enabled is set, the HTTP provider is built from
                config.

        Raises:
            StorageIOError: If the storage directory or database cannot be opened.
        """
        self.guard = WorkspaceGuard(workspace)
        self.storage_root = (
            Path(storage_root).expanduser().resolve()
            if storage_root is not None
            else self.guard.root / STORAGE_DIRNAME
        )
        self.config_manager = ConfigManager(self.storage_root)
        try:
            self.config = self.config_manager.load()
        except OSError as e:
            raise StorageIOError(f"Cannot prepare storage {self.storage_root}: {e}") from e
        self.config_warning: Optional[ConfigInvalid] = self.config_manager.recovered
        self._config_lock = threading.Lock()

        self.store = MemoryStore(
            str(self.storage_root / DB_FILENAME),
            wal_mode=self.config.store.wal_mode,
            busy_timeout_ms=self.config.store.busy_timeout_ms,
        )
        self.capture = CaptureEngine(self.config.capture)
        self.compaction = CompactionEngine(self.config.compaction, provider)
        self.syncer = AgentsSyncEngine(
            max_items=self.config.sync.max_items,
            max_chars=self.config.sync.max_chars,
        )
        logger.debug(
            "MemoryEngine ready: workspace=%s storage=%s", self.guard.root, self.storage_root,
        )

    @property
    def workspace(self) -> Path:
        """Return the canonical workspace root."""
        return self.guard.root

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> MemoryEngine:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- Guard -------------------------------------------------------------

    def check_cwd(self, cwd: Union[str, Path]) -> Path:
        """Validate a caller's working directory. Raises PathViolation."""
        return self.guard.check_cwd(cwd)

    # -- Entry operations --------------------------------------------------

    def add(
        self,
        content: str,
        category: Optional[str] = None,
        *,
        pinned: bool = False,
        origin: str = "manual",
    ) -> AddResult:
        if category is None:
            category = DEFAULT_CATEGORY
        return self.store.add(content, category, pinned=pinned, origin=origin)

    def get(self, ref: str) -> MemoryEntry:
        return self.store.get(ref)

    def list(
        self,
        category: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        include_archived: bool = False,
    ) -> ListPage:
        """One page of entries; next_cursor is set when more remain."""
        page_size = limit or self.config.limits.list_limit
        entries = self.store.list(
            category=category, limit=page_size, offset=offset,
            include_archived=include_archived,
        )
        total = self.store.count(category=category, include_archived=include_archived)
        end = offset + len(entries)
        cursor = encode_cursor(end) if end < total else None
        return ListPage(entries=entries, total=total, offset=offset, next_cursor=cursor)

    def search(
        self, query: str, limit: Optional[int] = None, category: Optional[str] = None,
    ) -> List[ScoredEntry]:
        return self.store.search(
            query,
            limit=limit or self.config.limits.search_limit,
            pinned_boost=self.config.search.pinned_boost,
            category=category,
        )

    def delete(self, ref: str) -> str:
        return self.store.delete(ref)

    def pin(self, ref: str, value: bool = True) -> MemoryEntry:
        return self.store.pin(ref, value)

    def stats(self) -> Dict[str, Any]:
        return self.store.stats()

    # -- Auto-capture ------------------------------------------------------

    def auto(self, mode: str = "status") -> Dict[str, Any]:
        """Turn heuristic auto-capture on or off (persisted), or report it.

        Raises:
            ValidationError: mode is not on, off or status.
        """
        if mode not in ("on", "off", "status"):
            raise ValidationError(f"auto mode must be on, off or status, got {mode!r}")
        changed = False
        with self._config_lock:
            if mode != "status":
                enabled = mode == "on"
                if self.config.capture.enabled != enabled:
                    self.config.capture.enabled = enabled
                    self.config_manager.save(self.config)
                    changed = True
                    logger.info("Auto-capture turned %s", mode)
            return {"enabled": self.config.capture.enabled, "changed": changed}

    def capture_candidates(
        self, transcript: str, persist: bool = False,
    ) -> List[CaptureCandidate]:
        """Propose memories from transcript text.

        With persist=True and auto-capture enabled, candidates at or above
        capture.min_confidence are stored (origin "captured") and marked
        accepted; the rest are marked rejected.
        """
        candidates = self.capture.propose(transcript)
        if not persist:
            return candidates
        if not self.config.capture.enabled:
            logger.info("Auto-capture is off; %d candidate(s) not stored", len(candidates))
            return candidates

        threshold = self.config.capture.min_confidence
        for candidate in candidates:
            if candidate.confidence < threshold:
                candidate.state = "rejected"
                continue
            try:
                result = self.store.add(
                    candidate.raw_text, candidate.proposed_category, origin="captured",
                )
            except ValidationError as e:
                logger.debug("Capture candidate rejected: %s", e)
                candidate.state = "rejected"
                continue
            candidate.state = "accepted"
            candidate.entry_id = result.id
        return candidates

    # -- Maintenance -------------------------------------------------------

    def refresh(self, cancel: Optional[threading.Event] = None) -> RefreshReport:
        """Compact the store, prune old events, refresh planner statistics."""
        snapshot = self.store.snapshot()
        result = self.compaction.compact(snapshot, cancel=cancel)
        applied = self.store.apply_compaction(result, input_count=len(snapshot))
        pruned = self.store.prune_events(self.config.retention.event_days)
        self.store.optimize()
        return RefreshReport(compaction=result, applied=applied, events_pruned=pruned)

    def sync_agents(self, path: Optional[Union[str, Path]] = None) -> SyncResult:
        """Rewrite the managed block of AGENTS.md (or path) under the workspace.

        Raises:
            PathViolation: path escapes the workspace.
            SyncMarkerConflict: the document's markers are corrupt.
        """
        target = self.guard.resolve(path or self.config.sync.document)
        entries = self.store.list(limit=None)
        return self.syncer.sync(entries, target)

    def preview(self) -> Dict[str, Any]:
        """Render the managed block as sync would write it, without writing."""
        entries = self.store.list(limit=None)
        body, selected = render_block(
            entries, self.syncer.max_items, self.syncer.max_chars,
        )
        return {
            "block": render_section(body),
            "selected": selected,
            "candidate_count": len(entries),
        }

    def export(
        self, fmt: str = "json", path: Optional[Union[str, Path]] = None,
    ) -> Dict[str, Any]:
        """Write an export document under the workspace.

        JSON exports include archived entries; Markdown lists active ones.

        Raises:
            ValidationError: unknown format.
            PathViolation: path escapes the workspace.
        """
        fmt = (fmt or "json").lower()
        if fmt not in EXPORT_EXTENSIONS:
            raise ValidationError(f"export format must be json or md, got {fmt!r}")
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        default_name = f"agentmem-export-{stamp}.{EXPORT_EXTENSIONS[fmt]}"
        target = self.guard.resolve(path or default_name)
        if target.is_dir():
            target = self.guard.resolve(target / default_name)

        generated_at = utc_stamp()
        if fmt == "json":
            entries = self.store.list(limit=None, include_archived=True)
            text = export_json(entries, self.store.stats(), generated_at)
        else:
            entries = self.store.list(limit=None)
            text = export_markdown(entries, generated_at)

        try:
            atomic_write_text(target, text)
        except OSError as e:
            raise StorageIOError(f"Cannot write export {target}: {e}") from e
        logger.info("Exported %d memories to %s", len(entries), target)
        return {"path": str(target), "format": fmt, "count": len(entries)}

    # -- Command channel ---------------------------------------------------

    def help_text(self) -> str:
        return HELP_TEXT

    def execute(self, raw: str) -> CommandOutcome:
        """Parse and run one ``/memory ...`` command.

        Raises whatever the parser or the operation raises (ParseError,
        NotFound, PathViolation, ...); callers map errors to their surface.
        """
        cmd = parse(raw)
        handler = getattr(self, f"_cmd_{cmd.name}")
        return handler(cmd)

    def _cmd_help(self, cmd: Command) -> CommandOutcome:
        return CommandOutcome("help", self.help_text())

    def _cmd_add(self, cmd: Command) -> CommandOutcome:
        result = self.add(cmd.content, cmd.category)
        if result.action == "deduped":
            message = f"Already stored as {result.id[:8]}."
        else:
            message = f"Saved memory {result.id[:8]}."
        return CommandOutcome("add", message, result.to_dict())

    def _cmd_list(self, cmd: Command) -> CommandOutcome:
        page = self.list(category=cmd.category, limit=cmd.limit, offset=cmd.offset)
        return CommandOutcome("list", format_rows(page.entries, page.next_cursor), page.to_dict())

    def _cmd_search(self, cmd: Command) -> CommandOutcome:
        hits = self.search(cmd.content, limit=cmd.limit, category=cmd.category)
        data = {"results": [dict(e.to_dict(), score=round(s, 4)) for e, s in hits]}
        return CommandOutcome("search", format_search_results(hits, cmd.content), data)

    def _cmd_delete(self, cmd: Command) -> CommandOutcome:
        entry_id = self.delete(cmd.target)
        return CommandOutcome("delete", f"Deleted memory {entry_id[:8]}.", {"id": entry_id})

    def _cmd_pin(self, cmd: Command) -> CommandOutcome:
        entry = self.pin(cmd.target, cmd.value != "off")
        verb = "Pinned" if entry.pinned else "Unpinned"
        return CommandOutcome("pin", f"{verb} memory {entry.short_id}.", entry.to_dict())

    def _cmd_auto(self, cmd: Command) -> CommandOutcome:
        state = self.auto(cmd.value or "status")
        return CommandOutcome("auto", format_auto_status(self.config.capture), state)

    def _cmd_stats(self, cmd: Command) -> CommandOutcome:
        stats = self.stats()
        return CommandOutcome("stats", format_stats(stats), stats)

    def _cmd_export(self, cmd: Command) -> CommandOutcome:
        info = self.export(cmd.fmt or "json", cmd.path)
        rel = self.guard.relative(Path(info["path"]))
        return CommandOutcome(
            "export", f"Exported {info['count']} memories to {rel}.", info,
        )

    def _cmd_refresh(self, cmd: Command) -> CommandOutcome:
        report = self.refresh()
        return CommandOutcome(
            "refresh", format_compaction(report.compaction, report.applied), report.to_dict(),
        )

    def _cmd_sync(self, cmd: Command) -> CommandOutcome:
        result = self.sync_agents(cmd.path)
        rel = self.guard.relative(Path(result.path))
        message = f"Managed block {result.action} in {rel} ({result.selected} entries)."
        return CommandOutcome("sync", message, result.to_dict())

    def _cmd_show(self, cmd: Command) -> CommandOutcome:
        preview = self.preview()
        return CommandOutcome("show", preview["block"], preview)

    def _cmd_capture(self, cmd: Command) -> CommandOutcome:
        candidates = self.capture_candidates(cmd.content)
        data = {"candidates": [c.to_dict() for c in candidates]}
        return CommandOutcome("capture", format_candidates(candidates), data)
