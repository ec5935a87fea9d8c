"""
Text Rendering — Human-readable output and export documents

Every surface that prints memories (CLI, the ``/memory`` command channel,
exports) renders through this module so the wording stays identical.

Export formats:
    json  - {"schema_version", "generated_at", "entries", "stats"}
    md    - entries grouped by category, pinned entries marked

Breaking changes to the JSON export MUST increment EXPORT_SCHEMA_VERSION.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from agentmem.config import CaptureConfig
from agentmem.types import CaptureCandidate, CompactionResult, MemoryEntry

EXPORT_SCHEMA_VERSION = 1


def utc_stamp() -> str:
    """Second-resolution UTC timestamp, e.g. 2026-10-18T09:30:00Z."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_rows(entries: List[MemoryEntry], next_cursor: Optional[str] = None) -> str:
    """One block per entry: id, category, pin flag, then the content."""
    if not entries:
        return "No active memories."
    lines: List[str] = []
    for entry in entries:
        pin = " [pinned]" if entry.pinned else ""
        archived = " [archived]" if entry.status == "archived" else ""
        lines.append(f"- {entry.id} ({entry.category}){pin}{archived}")
        lines.append(f"  {entry.content}")
    if next_cursor:
        lines.append("")
        lines.append(f"More: --cursor {next_cursor}")
    return "\n".join(lines)


def format_search_results(hits: List[Tuple[MemoryEntry, float]], query: str) -> str:
    """Ranked hits with their overlap score."""
    if not hits:
        return f"No memories match '{query}'."
    lines = [f"{len(hits)} match(es) for '{query}':"]
    for rank, (entry, score) in enumerate(hits, 1):
        pin = " [pinned]" if entry.pinned else ""
        lines.append(f"{rank}. [{score:.2f}] {entry.short_id} ({entry.category}){pin}")
        lines.append(f"   {entry.content}")
    return "\n".join(lines)


def format_stats(stats: Dict[str, Any]) -> str:
    lines = [
        "Memory stats",
        "",
        f"- Active: {stats['total']}",
        f"- Pinned: {stats['pinned_count']}",
        f"- Archived: {stats['archived_count']}",
    ]
    for category, count in stats.get("per_category_counts", {}).items():
        lines.append(f"  - {category}: {count}")
    origins = stats.get("per_origin_counts", {})
    if origins:
        lines.append(
            "- Origin: " + ", ".join(f"{k} {v}" for k, v in origins.items())
        )
    lines.append(f"- Last compaction: {stats.get('last_compaction_at') or 'never'}")
    lines.append(f"- Database: {stats['db_path']}")
    return "\n".join(lines)


def format_auto_status(capture: CaptureConfig) -> str:
    return "\n".join([
        "Auto-capture status",
        "",
        f"- Enabled: {'on' if capture.enabled else 'off'}",
        f"- Minimum confidence: {capture.min_confidence:.2f}",
        f"- Capture length: {capture.min_chars}-{capture.max_chars} chars",
        f"- Max candidates per transcript: {capture.max_candidates}",
        "",
        "Heuristics: explicit 'remember ...' requests, stated preferences,",
        "directives, repeated statements and corrections.",
        "Secret-looking text is never captured.",
    ])


def format_candidates(candidates: List[CaptureCandidate]) -> str:
    if not candidates:
        return "No capture candidates."
    lines: List[str] = []
    for c in candidates:
        suffix = f" -> {c.entry_id[:8]}" if c.entry_id else ""
        lines.append(
            f"- ({c.confidence:.2f}, {c.rationale}) [{c.proposed_category}] "
            f"{c.raw_text} [{c.state}]{suffix}"
        )
    return "\n".join(lines)


def format_compaction(result: CompactionResult, applied: Dict[str, int]) -> str:
    lines = [
        f"Compaction ({result.mode}): {len(result.kept)} kept, "
        f"{len(result.merged_ids)} merged, {len(result.evicted_ids)} archived",
    ]
    if result.used_fallback and result.reason:
        lines.append(f"- Fallback: {result.reason}")
    lines.append(
        f"- Store: {applied.get('updated', 0)} rewritten, "
        f"{applied.get('deleted', 0)} removed, {applied.get('archived', 0)} archived"
    )
    for note in result.merges:
        lines.append(f"- {note.removed_id[:8]} -> {note.kept_id[:8]}: {note.note}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Export documents
# ---------------------------------------------------------------------------


def export_json(
    entries: List[MemoryEntry], stats: Dict[str, Any], generated_at: Optional[str] = None,
) -> str:
    """Full-fidelity JSON export."""
    doc = {
        "schema_version": EXPORT_SCHEMA_VERSION,
        "generated_at": generated_at or utc_stamp(),
        "entries": [e.to_dict() for e in entries],
        "stats": stats,
    }
    return json.dumps(doc, indent=2, ensure_ascii=False) + "\n"


def export_markdown(entries: List[MemoryEntry], generated_at: Optional[str] = None) -> str:
    """Readable export, one section per category."""
    lines = ["# Agent Memory Export", "", f"Generated: {generated_at or utc_stamp()}", ""]
    grouped: Dict[str, List[MemoryEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.category, []).append(entry)
    if not grouped:
        lines.append("No active memories.")
        lines.append("")
    for category in sorted(grouped):
        lines.append(f"## {category}")
        lines.append("")
        for entry in grouped[category]:
            flag = "pinned" if entry.pinned else "unpinned"
            lines.append(f"- {entry.id} ({flag}, {entry.origin})")
            lines.append(f"  {entry.content}")
        lines.append("")
    return "\n".join(lines)
