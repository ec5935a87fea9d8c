"""
agentmem MCP Tools — 12 memory tools for MCP integration.

Thin wrappers around MemoryEngine. Each tool follows the same order:

    ① Workspace check  — validate the caller's cwd against the workspace root
    ② Tool execution   — one engine operation
    ③ Audit log        — always, including on failure (finally block)

Every tool returns {"status": "ok", ...} or
{"status": "error", "error": <kind>, "message": ...}; engine exceptions
never cross the MCP boundary.

Tool groups:
    ENTRIES:   memory_add, memory_list, memory_search, memory_delete, memory_pin
    CAPTURE:   memory_auto, memory_capture_candidates
    LIFECYCLE: memory_stats, memory_refresh, memory_sync_agents, memory_export
    COMMAND:   memory_command (raw "/memory ..." text)
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

from agentmem.agents_sync import SyncMarkerConflict
from agentmem.commands import ParseError, decode_cursor
from agentmem.config import ConfigInvalid
from agentmem.engine import MemoryEngine
from agentmem.guard import PathViolation
from agentmem.llm import CompactionProviderError
from agentmem.mcp.audit import AuditLogger
from agentmem.store import AmbiguousId, NotFound, StorageIOError
from agentmem.types import AgentMemError, ValidationError

logger = logging.getLogger(__name__)

# Most specific first: several errors share base classes.
_ERROR_KINDS = (
    (ParseError, "parse_error"),
    (PathViolation, "path_violation"),
    (ValidationError, "validation_error"),
    (NotFound, "not_found"),
    (AmbiguousId, "ambiguous_id"),
    (SyncMarkerConflict, "sync_marker_conflict"),
    (ConfigInvalid, "config_invalid"),
    (CompactionProviderError, "compaction_provider_error"),
    (StorageIOError, "storage_io_error"),
)


def error_kind(exc: BaseException) -> str:
    """Stable machine-readable kind for an exception."""
    for cls, kind in _ERROR_KINDS:
        if isinstance(exc, cls):
            return kind
    return "internal_error"


def error_response(exc: BaseException) -> Dict[str, Any]:
    """Tool error payload for exc."""
    response: Dict[str, Any] = {
        "status": "error",
        "error": error_kind(exc),
        "message": str(exc),
    }
    if isinstance(exc, AmbiguousId):
        response["matches"] = list(exc.matches)
    if isinstance(exc, ParseError):
        response["token"] = exc.token
        response["position"] = exc.position
    return response


def _outcome(exc: BaseException) -> str:
    return "rejected" if isinstance(exc, PathViolation) else "error"


def register_memory_tools(
    mcp,
    engine: MemoryEngine,
    *,
    audit: Optional[AuditLogger] = None,
) -> None:
    """
    Register all 12 memory MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        engine: Open MemoryEngine bound to the served workspace.
        audit: AuditLogger for structured logging (default: stderr).
    """
    if audit is None:
        audit = AuditLogger()

    _audit_db = engine.guard.relative(Path(engine.store.db_path).resolve())

    def _check_cwd(cwd: Optional[str]) -> None:
        if cwd is not None:
            engine.check_cwd(cwd)

    def _finish(tool: str, rid: str, outcome: str, detail: Dict[str, Any], t0: float) -> None:
        audit.log(tool, rid, _audit_db, outcome, detail, (time.monotonic() - t0) * 1000)

    def _unexpected(tool: str, e: Exception) -> Dict[str, Any]:
        if not isinstance(e, AgentMemError):
            logger.exception("%s failed unexpectedly", tool)
        return error_response(e)

    # =====================================================================
    # ENTRIES
    # =====================================================================

    @mcp.tool()
    def memory_add(
        content: str,
        category: Optional[str] = None,
        pinned: bool = False,
        cwd: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Store one durable memory (a fact, preference or convention).

        Content that duplicates an active memory is not stored twice; the
        existing id is returned with action "deduped".

        Args:
            content: Memory text (non-empty, at most 1200 chars, no secrets).
            category: preference | workflow | constraint | fact | decision |
                convention | other (or any lowercase name). Default: other.
            pinned: Protect the memory from compaction.
            cwd: Caller's working directory (must be inside the workspace).

        Returns:
            id: Memory id.
            action: "added" or "deduped".
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = AuditLogger.make_content_detail(content)
        try:
            _check_cwd(cwd)
            result = engine.add(content, category, pinned=pinned)
            detail["action"] = result.action
            return {"status": "ok", **result.to_dict()}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_add", e)
        finally:
            _finish("memory_add", rid, outcome, detail, t0)

    @mcp.tool()
    def memory_list(
        category: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        include_archived: bool = False,
        cwd: Optional[str] = None,
    ) -> Dict[str, Any]:
        """List memories: pinned first, then most recently updated.

        Args:
            category: Only this category.
            limit: Page size (default from config, 50).
            cursor: next_cursor from a previous page.
            include_archived: Also list entries archived by compaction.
            cwd: Caller's working directory.

        Returns:
            entries, total, next_cursor (null on the last page).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            _check_cwd(cwd)
            offset = 0
            if cursor:
                try:
                    offset = decode_cursor(cursor)
                except ValueError as e:
                    raise ValidationError(str(e)) from None
            page = engine.list(
                category=category, limit=limit, offset=offset,
                include_archived=include_archived,
            )
            detail = {"count": len(page.entries), "total": page.total}
            return {"status": "ok", **page.to_dict()}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_list", e)
        finally:
            _finish("memory_list", rid, outcome, detail, t0)

    @mcp.tool()
    def memory_search(
        query: str,
        limit: Optional[int] = None,
        category: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Rank memories by word overlap with the query.

        Score = fraction of distinct query words found in the memory, plus a
        boost for pinned memories. Non-matching memories are omitted.

        Args:
            query: A few keywords.
            limit: Max results (default from config, 20).
            category: Only this category.
            cwd: Caller's working directory.

        Returns:
            count, results (each entry with its score).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"query_len": len(query or "")}
        try:
            _check_cwd(cwd)
            hits = engine.search(query, limit=limit, category=category)
            detail["results"] = len(hits)
            return {
                "status": "ok",
                "count": len(hits),
                "results": [dict(e.to_dict(), score=round(s, 4)) for e, s in hits],
            }
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_search", e)
        finally:
            _finish("memory_search", rid, outcome, detail, t0)

    @mcp.tool()
    def memory_delete(id: str, cwd: Optional[str] = None) -> Dict[str, Any]:
        """Permanently delete one memory.

        Args:
            id: Full id or a unique id prefix.
            cwd: Caller's working directory.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            _check_cwd(cwd)
            deleted = engine.delete(id)
            detail = {"id": deleted}
            return {"status": "ok", "id": deleted}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_delete", e)
        finally:
            _finish("memory_delete", rid, outcome, detail, t0)

    @mcp.tool()
    def memory_pin(id: str, pinned: bool = True, cwd: Optional[str] = None) -> Dict[str, Any]:
        """Pin (or unpin) a memory. Pinned memories survive every compaction.

        Args:
            id: Full id or a unique id prefix.
            pinned: True to pin, False to unpin.
            cwd: Caller's working directory.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"pinned": pinned}
        try:
            _check_cwd(cwd)
            entry = engine.pin(id, pinned)
            detail["id"] = entry.id
            return {"status": "ok", "entry": entry.to_dict()}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_pin", e)
        finally:
            _finish("memory_pin", rid, outcome, detail, t0)

    # =====================================================================
    # CAPTURE
    # =====================================================================

    @mcp.tool()
    def memory_auto(mode: str = "status", cwd: Optional[str] = None) -> Dict[str, Any]:
        """Turn heuristic auto-capture on or off, or report its state.

        Args:
            mode: on | off | status.
            cwd: Caller's working directory.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"mode": mode}
        try:
            _check_cwd(cwd)
            state = engine.auto(mode)
            return {"status": "ok", **state}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_auto", e)
        finally:
            _finish("memory_auto", rid, outcome, detail, t0)

    @mcp.tool()
    def memory_capture_candidates(
        transcript: str,
        persist: bool = False,
        cwd: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Propose memories worth keeping from transcript text.

        Nothing is stored unless persist is true and auto-capture is on; then
        candidates at or above the configured confidence are added.

        Args:
            transcript: Conversation text ("user: ..." / "assistant: ..." lines,
                or plain paragraphs).
            persist: Store accepted candidates.
            cwd: Caller's working directory.

        Returns:
            candidates: raw_text, proposed_category, confidence, rationale,
                state, entry_id.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = AuditLogger.make_content_detail(transcript)
        try:
            _check_cwd(cwd)
            candidates = engine.capture_candidates(transcript, persist=persist)
            detail["candidates"] = len(candidates)
            detail["accepted"] = sum(1 for c in candidates if c.state == "accepted")
            return {"status": "ok", "candidates": [c.to_dict() for c in candidates]}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_capture_candidates", e)
        finally:
            _finish("memory_capture_candidates", rid, outcome, detail, t0)

    # =====================================================================
    # LIFECYCLE
    # =====================================================================

    @mcp.tool()
    def memory_stats(cwd: Optional[str] = None) -> Dict[str, Any]:
        """Counts by status, category and origin, plus the last compaction time."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            _check_cwd(cwd)
            stats = engine.stats()
            stats["db_path"] = _audit_db
            return {"status": "ok", **stats}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_stats", e)
        finally:
            _finish("memory_stats", rid, outcome, detail, t0)

    @mcp.tool()
    def memory_refresh(cwd: Optional[str] = None) -> Dict[str, Any]:
        """Compact memories (merge near-duplicates, archive overflow) and
        run store maintenance. Pinned memories are never changed.

        Returns:
            compaction: kept/removed/merged/evicted ids, used_fallback, mode.
            applied: rows rewritten, removed and archived.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            _check_cwd(cwd)
            report = engine.refresh()
            detail = {
                "mode": report.compaction.mode,
                "fallback": report.compaction.used_fallback,
                "removed": len(report.compaction.removed_ids),
            }
            return {"status": "ok", **report.to_dict()}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_refresh", e)
        finally:
            _finish("memory_refresh", rid, outcome, detail, t0)

    @mcp.tool()
    def memory_sync_agents(
        path: Optional[str] = None, cwd: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Rewrite the agentmem-managed block in AGENTS.md.

        Only the text between the agentmem markers is replaced; the rest of
        the document is left byte-for-byte intact.

        Args:
            path: Document path inside the workspace (default: AGENTS.md).
            cwd: Caller's working directory.

        Returns:
            path, changed, action (inserted | replaced | unchanged), selected.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            _check_cwd(cwd)
            result = engine.sync_agents(path)
            detail = {"action": result.action, "selected": result.selected}
            payload = result.to_dict()
            payload["path"] = engine.guard.relative(Path(result.path))
            return {"status": "ok", **payload}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_sync_agents", e)
        finally:
            _finish("memory_sync_agents", rid, outcome, detail, t0)

    @mcp.tool()
    def memory_export(
        format: str = "json",
        path: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Export memories to a file inside the workspace.

        Args:
            format: json (full fidelity) or md (readable).
            path: Output path (default: agentmem-export-<timestamp>.<ext>).
            cwd: Caller's working directory.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"format": format}
        try:
            _check_cwd(cwd)
            info = engine.export(format, path)
            info["path"] = engine.guard.relative(Path(info["path"]))
            detail["count"] = info["count"]
            return {"status": "ok", **info}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_export", e)
        finally:
            _finish("memory_export", rid, outcome, detail, t0)

    # =====================================================================
    # COMMAND
    # =====================================================================

    @mcp.tool()
    def memory_command(command: str, cwd: Optional[str] = None) -> Dict[str, Any]:
        """Run a raw "/memory ..." command (same grammar as the chat command).

        Examples: "/memory Use pnpm", "/memory list --limit 5",
        "/memory pin 3f2a on", "/memory show", "/memory help".

        Returns:
            command, message (display text), data (structured result).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = AuditLogger.make_content_detail(command)
        try:
            _check_cwd(cwd)
            result = engine.execute(command)
            detail["command"] = result.command
            return {"status": "ok", **result.to_dict()}
        except Exception as e:
            outcome = _outcome(e)
            return _unexpected("memory_command", e)
        finally:
            _finish("memory_command", rid, outcome, detail, t0)
