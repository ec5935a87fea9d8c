"""
Compaction — Bounded Deduplication with Optional LLM Refinement

Reduces the active entry set in four steps:

  1. Partition entries by category.
  2. Merge near-duplicates inside each category (token Jaccard strictly above
     compaction.duplicate_threshold).
  3. Evict the lowest-value non-pinned entries while above compaction.cap.
  4. One LLM refinement pass over the result, bounded by a deadline.

Compaction contract:
  - Pinned entries always come out present and byte-for-byte unchanged.
  - Two non-pinned near-duplicates merge: longest content is the base
    (tie-break: most recent updated_at, then lexicographic id); the other's
    text is appended when it adds tokens and the result still fits; the
    merged entry keeps the most recent updated_at, earliest created_at, and
    summed access counts.
  - A non-pinned near-duplicate of a pinned entry is subsumed by it.
  - Two pinned near-duplicates are both kept.
  - Eviction order: access_count ascending, updated_at ascending, id.
  - Steps 1-3 are pure and deterministic. Any refinement failure (disabled,
    no provider, no credential, timeout, cancel, malformed answer, unsafe
    suggestion) returns exactly the deterministic result with
    used_fallback=True.
  - Never mutates its input entries.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from agentmem.config import CompactionConfig
from agentmem.llm import (
    Invalid,
    OpenAIResponsesProvider,
    Refined,
    RefinementProvider,
    refine,
)
from agentmem.policy import screen_content
from agentmem.similarity import adds_information, jaccard
from agentmem.types import (
    MAX_CONTENT_CHARS,
    CompactionResult,
    MemoryEntry,
    MergeNote,
    ValidationError,
    validate_content,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Deterministic helpers
# ---------------------------------------------------------------------------


def _display_order(entries: List[MemoryEntry]) -> List[MemoryEntry]:
    """Pinned first, most recently updated first, then id."""
    ordered = sorted(entries, key=lambda e: e.id)
    ordered.sort(key=lambda e: e.updated_at, reverse=True)
    ordered.sort(key=lambda e: not e.pinned)
    return ordered


def _partition(entries: List[MemoryEntry]) -> Dict[str, List[MemoryEntry]]:
    """Group entries by category (keys sorted)."""
    groups: Dict[str, List[MemoryEntry]] = defaultdict(list)
    for entry in entries:
        groups[entry.category].append(entry)
    return {k: groups[k] for k in sorted(groups)}


def _pick_base(a: MemoryEntry, b: MemoryEntry) -> Tuple[MemoryEntry, MemoryEntry]:
    """Return (base, other): longer content, then more recent, then smaller id."""
    ka = (len(a.content), a.updated_at)
    kb = (len(b.content), b.updated_at)
    if ka != kb:
        return (a, b) if ka > kb else (b, a)
    return (a, b) if a.id < b.id else (b, a)


def _merge_pair(a: MemoryEntry, b: MemoryEntry) -> Tuple[MemoryEntry, MemoryEntry]:
    """Merge two non-pinned entries. Returns (merged, absorbed)."""
    base, other = _pick_base(a, b)
    content = base.content
    if adds_information(base.content, other.content):
        combined = f"{base.content}; {other.content}"
        if len(combined) <= MAX_CONTENT_CHARS:
            content = combined
    merged = replace(
        base,
        content=content,
        updated_at=max(a.updated_at, b.updated_at),
        created_at=min(a.created_at, b.created_at),
        access_count=a.access_count + b.access_count,
    )
    return merged, other


def _dedupe_category(
    entries: List[MemoryEntry], threshold: float,
) -> Tuple[List[MemoryEntry], List[str], List[MergeNote]]:
    """Greedy near-duplicate merge within one category."""
    ordered = sorted(entries, key=lambda e: (not e.pinned, e.created_at, e.id))
    survivors: List[MemoryEntry] = []
    removed: List[str] = []
    notes: List[MergeNote] = []

    for entry in ordered:
        if entry.pinned:
            survivors.append(entry)
            continue
        match = None
        for i, survivor in enumerate(survivors):
            if jaccard(survivor.content, entry.content) > threshold:
                match = i
                break
        if match is None:
            survivors.append(entry)
            continue

        survivor = survivors[match]
        if survivor.pinned:
            removed.append(entry.id)
            notes.append(MergeNote(
                kept_id=survivor.id, removed_id=entry.id,
                note="near-duplicate of pinned entry; pinned entry kept unchanged",
            ))
            continue

        merged, absorbed = _merge_pair(survivor, entry)
        survivors[match] = merged
        removed.append(absorbed.id)
        extended = merged.content != _pick_base(survivor, entry)[0].content
        notes.append(MergeNote(
            kept_id=merged.id, removed_id=absorbed.id,
            note=(
                "near-duplicate merged; longer entry kept"
                + ("; text of the other appended" if extended else "")
            ),
        ))
    return survivors, removed, notes


def _evict(entries: List[MemoryEntry], cap: int) -> Tuple[List[MemoryEntry], List[str]]:
    """Drop lowest-value non-pinned entries until len(entries) <= cap."""
    excess = len(entries) - cap
    if excess <= 0:
        return entries, []
    candidates = sorted(
        (e for e in entries if not e.pinned),
        key=lambda e: (e.access_count, e.updated_at, e.id),
    )
    evicted = {e.id for e in candidates[:excess]}
    # Evicted in eviction order for a stable removed_ids listing
    evicted_order = [e.id for e in candidates[:excess]]
    return [e for e in entries if e.id not in evicted], evicted_order


def deterministic_compact(
    entries: List[MemoryEntry], config: CompactionConfig,
) -> CompactionResult:
    """Steps 1-3. Pure function of (entries, config)."""
    active = [e for e in entries if e.status == "active"]
    survivors: List[MemoryEntry] = []
    merged_ids: List[str] = []
    notes: List[MergeNote] = []
    for _category, group in _partition(active).items():
        kept, removed, group_notes = _dedupe_category(group, config.duplicate_threshold)
        survivors.extend(kept)
        merged_ids.extend(removed)
        notes.extend(group_notes)

    survivors, evicted_ids = _evict(survivors, config.cap)
    return CompactionResult(
        kept=_display_order(survivors),
        merged_ids=merged_ids,
        evicted_ids=evicted_ids,
        merges=notes,
        used_fallback=False,
        mode="deterministic",
    )


# ---------------------------------------------------------------------------
# Refinement
# ---------------------------------------------------------------------------


class _UnsafeSuggestion(ValueError):
    """A well-formed suggestion that would break a compaction invariant."""


def _safe_content(text: str) -> str:
    try:
        clean = validate_content(text)
    except ValidationError as e:
        raise _UnsafeSuggestion(str(e)) from None
    if not screen_content(clean).accepted:
        raise _UnsafeSuggestion("suggested content failed content screening")
    return clean


def apply_suggestions(
    base: CompactionResult, payload: Dict[str, Any],
) -> CompactionResult:
    """Apply validated provider suggestions on top of a deterministic result.

    Raises _UnsafeSuggestion if any suggestion names an unknown or pinned id,
    reuses an id, merges across categories, or carries invalid content.
    """
    by_id = {e.id: e for e in base.kept}
    used: set = set()

    def claim(entry_id: str) -> MemoryEntry:
        entry = by_id.get(entry_id)
        if entry is None:
            raise _UnsafeSuggestion(f"unknown id {entry_id!r}")
        if entry.pinned:
            raise _UnsafeSuggestion(f"pinned entry {entry_id!r} cannot change")
        if entry_id in used:
            raise _UnsafeSuggestion(f"id {entry_id!r} used twice")
        used.add(entry_id)
        return entry

    merged_ids = list(base.merged_ids)
    evicted_ids = list(base.evicted_ids)
    notes = list(base.merges)
    replaced: Dict[str, MemoryEntry] = {}
    gone: set = set()

    for merge in payload.get("merges", []):
        group = [claim(i) for i in merge["ids"]]
        if len({e.category for e in group}) != 1:
            raise _UnsafeSuggestion("merge spans several categories")
        content = _safe_content(merge["content"])
        keeper = group[0]
        for other in group[1:]:
            keeper, _ = _pick_base(keeper, other)
        merged = replace(
            keeper,
            content=content,
            updated_at=max(e.updated_at for e in group),
            created_at=min(e.created_at for e in group),
            access_count=sum(e.access_count for e in group),
        )
        replaced[merged.id] = merged
        for e in group:
            if e.id != merged.id:
                gone.add(e.id)
                merged_ids.append(e.id)
                notes.append(MergeNote(
                    kept_id=merged.id, removed_id=e.id, note="merged by refinement",
                ))

    for entry_id in payload.get("drops", []):
        claim(entry_id)
        gone.add(entry_id)
        evicted_ids.append(entry_id)

    for summary in payload.get("summaries", []):
        entry = claim(summary["id"])
        replaced[entry.id] = replace(entry, content=_safe_content(summary["content"]))

    kept = [replaced.get(e.id, e) for e in base.kept if e.id not in gone]
    return CompactionResult(
        kept=_display_order(kept),
        merged_ids=merged_ids,
        evicted_ids=evicted_ids,
        merges=notes,
        used_fallback=False,
        mode="llm",
    )


def _fallback(base: CompactionResult, mode: str, reason: str) -> CompactionResult:
    return replace(base, used_fallback=True, mode=mode, reason=reason)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class CompactionEngine:
    """
    Compaction with an optional single LLM refinement pass.

    Usage:
        engine = CompactionEngine(config.compaction)
        result = engine.compact(store.snapshot())
    """

    def __init__(
        self,
        config: Optional[CompactionConfig] = None,
        provider: Optional[RefinementProvider] = None,
    ):
        self.config = config or CompactionConfig()
        if provider is None and self.config.llm_enabled:
            provider = OpenAIResponsesProvider.from_config(self.config)
        self.provider = provider

    def compact(
        self,
        entries: List[MemoryEntry],
        config: Optional[CompactionConfig] = None,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> CompactionResult:
        """Run one compaction pass over a snapshot of entries.

        Args:
            entries: Current entries (archived ones are ignored).
            config: Overrides the engine's config for this call.
            cancel: Set to abandon the refinement call early.
            timeout: Refinement deadline in seconds (default: timeout_ms).
        """
        cfg = config or self.config
        base = deterministic_compact(entries, cfg)
        logger.debug(
            "Deterministic compaction: %d in, %d kept, %d merged, %d evicted",
            len(entries), len(base.kept), len(base.merged_ids), len(base.evicted_ids),
        )

        if not cfg.llm_enabled:
            return _fallback(base, "deterministic", "refinement disabled")
        if self.provider is None:
            return _fallback(base, "deterministic", "no refinement provider")
        if not any(not e.pinned for e in base.kept):
            return _fallback(base, "deterministic", "nothing to refine")

        deadline = timeout if timeout is not None else cfg.timeout_ms / 1000.0
        outcome = refine(
            base.kept, self.provider,
            timeout=deadline,
            max_output_chars=cfg.max_output_chars,
            cancel=cancel,
        )
        if isinstance(outcome, Refined):
            try:
                result = apply_suggestions(base, outcome.payload)
            except _UnsafeSuggestion as e:
                outcome = Invalid(f"unsafe suggestion: {e}")
            else:
                logger.info(
                    "Refinement applied: %d kept, %d removed",
                    len(result.kept), len(result.removed_ids),
                )
                return result

        logger.info("Refinement skipped, using deterministic result: %s", outcome.reason)
        return _fallback(base, "llm_fallback", outcome.reason)
