"""
Tests for agentmem.agents_sync — managed block rendering and splicing.
"""

import threading

import pytest

from agentmem.agents_sync import (
    BLOCK_HEADING,
    EMPTY_BODY,
    END_MARKER,
    START_MARKER,
    AgentsSyncEngine,
    SyncMarkerConflict,
    render_block,
    render_line,
    render_section,
    splice,
)
from agentmem.types import MemoryEntry


def _entry(eid, content, *, category="fact", pinned=False, updated="2026-01-01T00:00:00",
           status="active"):
    return MemoryEntry(
        content=content, category=category, id=eid, pinned=pinned,
        status=status, created_at=updated, updated_at=updated,
    )


SECTION = render_section(render_block([])[0]).encode("utf-8")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


class TestRender:
    def test_line(self):
        assert render_line(_entry("a", "Use pnpm", category="workflow")) == "- [workflow] Use pnpm"
        assert render_line(_entry("b", "Tabs", pinned=True)) == "- [fact/pinned] Tabs"

    def test_empty_store(self):
        text, selected = render_block([])
        assert selected == 0
        assert text.splitlines()[0] == BLOCK_HEADING
        assert text.endswith(EMPTY_BODY)

    def test_order(self):
        entries = [
            _entry("a", "older", updated="2026-01-01T00:00:00"),
            _entry("b", "newer", updated="2026-02-01T00:00:00"),
            _entry("c", "pinned", pinned=True, updated="2025-01-01T00:00:00"),
            _entry("d", "archived", status="archived", updated="2026-03-01T00:00:00"),
        ]
        text, selected = render_block(entries)
        bullets = [line for line in text.splitlines() if line.startswith("- ")]
        assert bullets == ["- [fact/pinned] pinned", "- [fact] newer", "- [fact] older"]
        assert selected == 3

    def test_max_items(self):
        entries = [_entry(f"e{i}", f"entry {i}") for i in range(5)]
        _, selected = render_block(entries, max_items=2)
        assert selected == 2

    def test_max_chars_skips_long_lines(self):
        entries = [
            _entry("a", "x" * 500, updated="2026-02-01T00:00:00"),
            _entry("b", "short one", updated="2026-01-01T00:00:00"),
        ]
        text, selected = render_block(entries, max_chars=200)
        assert selected == 1
        assert "- [fact] short one" in text
        assert len(text) <= 200

    def test_no_timestamps(self):
        entries = [_entry("a", "Use pnpm")]
        assert render_block(entries) == render_block(entries)
        assert "2026" not in render_block(entries)[0]


# ---------------------------------------------------------------------------
# Splicing
# ---------------------------------------------------------------------------


class TestSplice:
    def test_empty_document(self):
        out, action = splice(b"", SECTION)
        assert action == "inserted"
        assert out == SECTION + b"\n"

    def test_append_keeps_content(self):
        doc = b"# Project\n\nSome rules."
        out, action = splice(doc, SECTION)
        assert action == "inserted"
        assert out == doc + b"\n\n" + SECTION + b"\n"

    def test_append_after_trailing_newline(self):
        doc = b"# Project\n"
        out, _ = splice(doc, SECTION)
        assert out == doc + b"\n" + SECTION + b"\n"

    def test_replace_preserves_outside_bytes(self):
        before = b"# Title\r\n\xef\xbb\xbfcaf\xc3\xa9\r\n"
        after = b"\r\ntrailer \xff bytes\r\n"
        old = f"{START_MARKER}\nold body\n{END_MARKER}".encode("utf-8")
        out, action = splice(before + old + after, SECTION)
        assert action == "replaced"
        assert out == before + SECTION + after

    @pytest.mark.parametrize("doc", [
        f"{START_MARKER}\nno end\n",
        f"no start\n{END_MARKER}\n",
        f"{START_MARKER}\n{END_MARKER}\n{START_MARKER}\n{END_MARKER}\n",
        f"{END_MARKER}\nbody\n{START_MARKER}\n",
    ])
    def test_conflicts(self, doc):
        with pytest.raises(SyncMarkerConflict):
            splice(doc.encode("utf-8"), SECTION, "AGENTS.md")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestAgentsSyncEngine:
    def test_creates_document(self, tmp_path):
        target = tmp_path / "AGENTS.md"
        result = AgentsSyncEngine().sync([_entry("a", "Use pnpm")], target)
        assert result.action == "inserted"
        assert result.changed is True
        assert result.selected == 1
        text = target.read_text(encoding="utf-8")
        assert text.startswith(START_MARKER)
        assert "- [fact] Use pnpm" in text
        assert text.endswith(END_MARKER + "\n")

    def test_second_sync_unchanged(self, tmp_path):
        target = tmp_path / "AGENTS.md"
        target.write_text("# Rules\n", encoding="utf-8")
        engine = AgentsSyncEngine()
        entries = [_entry("a", "Use pnpm")]
        engine.sync(entries, target)
        first = target.read_bytes()
        mtime = target.stat().st_mtime_ns
        result = engine.sync(entries, target)
        assert result.action == "unchanged"
        assert result.changed is False
        assert target.read_bytes() == first
        assert target.stat().st_mtime_ns == mtime

    def test_replaces_block(self, tmp_path):
        target = tmp_path / "AGENTS.md"
        target.write_text("# Rules\n\nBe nice.\n", encoding="utf-8")
        engine = AgentsSyncEngine()
        engine.sync([_entry("a", "Use pnpm")], target)
        result = engine.sync([_entry("b", "Use yarn")], target)
        assert result.action == "replaced"
        text = target.read_text(encoding="utf-8")
        assert text.startswith("# Rules\n\nBe nice.\n")
        assert "Use yarn" in text
        assert "Use pnpm" not in text
        assert text.count(START_MARKER) == 1

    def test_conflict_leaves_file(self, tmp_path):
        target = tmp_path / "AGENTS.md"
        original = f"{START_MARKER}\nbroken\n".encode("utf-8")
        target.write_bytes(original)
        with pytest.raises(SyncMarkerConflict) as exc:
            AgentsSyncEngine().sync([], target)
        assert exc.value.starts == 1
        assert exc.value.ends == 0
        assert target.read_bytes() == original

    def test_concurrent_syncs(self, tmp_path):
        target = tmp_path / "AGENTS.md"
        target.write_text("# Rules\n", encoding="utf-8")
        engine = AgentsSyncEngine()
        errors = []

        def run(i):
            try:
                engine.sync([_entry(f"e{i}", f"entry {i}")], target)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        text = target.read_text(encoding="utf-8")
        assert text.count(START_MARKER) == 1
        assert text.count(END_MARKER) == 1
        assert text.startswith("# Rules\n")
