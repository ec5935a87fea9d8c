"""
Tests for agentmem.formatting — display text and export documents.
"""

import json

from agentmem.config import CaptureConfig
from agentmem.formatting import (
    EXPORT_SCHEMA_VERSION,
    export_json,
    export_markdown,
    format_auto_status,
    format_candidates,
    format_compaction,
    format_rows,
    format_search_results,
)
from agentmem.types import CaptureCandidate, CompactionResult, MemoryEntry, MergeNote


def _entry(eid, content, **kw):
    return MemoryEntry(content=content, id=eid, **kw)


class TestRows:
    def test_empty(self):
        assert format_rows([]) == "No active memories."

    def test_flags_and_cursor(self):
        text = format_rows([_entry("a", "Use pnpm", category="workflow", pinned=True)], "bzox")
        assert text.splitlines() == [
            "- a (workflow) [pinned]",
            "  Use pnpm",
            "",
            "More: --cursor bzox",
        ]

    def test_search_results(self):
        text = format_search_results([(_entry("abcdef123", "Use pnpm"), 0.5)], "pnpm")
        assert text.splitlines()[1] == "1. [0.50] abcdef12 (other)"


class TestStatusText:
    def test_auto_status(self):
        assert "- Enabled: off" in format_auto_status(CaptureConfig(enabled=False))

    def test_candidates(self):
        c = CaptureCandidate(raw_text="Use pnpm", proposed_category="workflow",
                             confidence=0.6, rationale="explicit", state="accepted",
                             entry_id="0123456789")
        assert format_candidates([c]) == (
            "- (0.60, explicit) [workflow] Use pnpm [accepted] -> 01234567"
        )
        assert format_candidates([]) == "No capture candidates."

    def test_compaction(self):
        result = CompactionResult(
            merged_ids=["bbbbbbbbbb"],
            merges=[MergeNote(kept_id="aaaaaaaaaa", removed_id="bbbbbbbbbb", note="merged")],
            used_fallback=True, mode="llm_fallback", reason="OPENAI_API_KEY is not set",
        )
        text = format_compaction(result, {"deleted": 1})
        assert text.splitlines()[0] == "Compaction (llm_fallback): 0 kept, 1 merged, 0 archived"
        assert "- Fallback: OPENAI_API_KEY is not set" in text
        assert "- bbbbbbbb -> aaaaaaaa: merged" in text


class TestExports:
    def test_json(self):
        text = export_json([_entry("a", "Use pnpm")], {"total": 1}, "2026-10-18T00:00:00Z")
        doc = json.loads(text)
        assert doc["schema_version"] == EXPORT_SCHEMA_VERSION
        assert doc["generated_at"] == "2026-10-18T00:00:00Z"
        assert doc["entries"][0]["content"] == "Use pnpm"
        assert text.endswith("}\n")

    def test_markdown_grouped(self):
        text = export_markdown([
            _entry("w", "Use pnpm", category="workflow"),
            _entry("f", "API in services/api", category="fact", pinned=True),
        ], "2026-10-18T00:00:00Z")
        lines = text.splitlines()
        assert lines[0] == "# Agent Memory Export"
        assert lines.index("## fact") < lines.index("## workflow")
        assert "- f (pinned, manual)" in lines

    def test_markdown_empty(self):
        assert "No active memories." in export_markdown([], "now")
