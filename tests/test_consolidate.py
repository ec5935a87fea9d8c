"""
Tests for agentmem.consolidate — deterministic compaction and refinement.
"""

import copy
import json
import threading

import pytest

from agentmem.config import CompactionConfig
from agentmem.consolidate import CompactionEngine, apply_suggestions, deterministic_compact
from agentmem.llm import CompactionProviderError, RefinementProvider
from agentmem.types import MemoryEntry


def _entry(eid, content, *, category="fact", pinned=False, updated="2026-01-01T00:00:00",
           created=None, access=0, status="active"):
    return MemoryEntry(
        content=content, category=category, id=eid, pinned=pinned,
        access_count=access, status=status,
        created_at=created or updated, updated_at=updated,
    )


class FakeProvider(RefinementProvider):
    """Returns canned text, raises, or blocks until released."""

    name = "fake"

    def __init__(self, text="", error=None, block=False):
        self.text = text
        self.error = error
        self.block = block
        self.calls = []
        self.release = threading.Event()

    def complete(self, system, user, timeout):
        self.calls.append(json.loads(user))
        if self.block:
            self.release.wait(2.0)
        if self.error is not None:
            raise self.error
        return self.text


def _payload(**kw):
    return json.dumps({"merges": [], "drops": [], "summaries": [], **kw})


# ---------------------------------------------------------------------------
# Deterministic steps
# ---------------------------------------------------------------------------


class TestDedup:
    def test_exact_duplicates_merge(self):
        a = _entry("a", "use pnpm for installs", updated="2026-01-01T00:00:00", access=2)
        b = _entry("b", "Use pnpm for installs.", updated="2026-01-02T00:00:00", access=3)
        result = deterministic_compact([a, b], CompactionConfig())
        assert [e.id for e in result.kept] == ["b"]
        kept = result.kept[0]
        assert kept.content == "Use pnpm for installs."
        assert kept.access_count == 5
        assert kept.created_at == "2026-01-01T00:00:00"
        assert kept.updated_at == "2026-01-02T00:00:00"
        assert result.merged_ids == ["a"]
        assert result.evicted_ids == []
        assert result.merges[0].kept_id == "b"

    def test_merge_appends_new_tokens(self):
        a = _entry("a", "run the unit tests with pytest nightly")
        b = _entry("b", "run the unit tests with pytest often", updated="2026-01-02T00:00:00")
        result = deterministic_compact([a, b], CompactionConfig(duplicate_threshold=0.7))
        [kept] = result.kept
        assert kept.id == "a"
        assert kept.content == (
            "run the unit tests with pytest nightly; run the unit tests with pytest often"
        )
        assert "appended" in result.merges[0].note

    def test_threshold_is_strict(self):
        a = _entry("a", "alpha beta gamma delta")
        b = _entry("b", "alpha beta gamma delta epsilon")
        result = deterministic_compact([a, b], CompactionConfig(duplicate_threshold=0.8))
        assert len(result.kept) == 2
        assert result.removed_ids == []

    def test_categories_never_merge(self):
        a = _entry("a", "use pnpm", category="fact")
        b = _entry("b", "use pnpm", category="workflow")
        result = deterministic_compact([a, b], CompactionConfig())
        assert {e.id for e in result.kept} == {"a", "b"}

    def test_pinned_subsumes_duplicate(self):
        pinned = _entry("p", "Use pnpm", pinned=True)
        other = _entry("n", "Use pnpm for all installs", updated="2026-02-01T00:00:00")
        original = copy.deepcopy(pinned)
        result = deterministic_compact([pinned, other], CompactionConfig(duplicate_threshold=0.3))
        assert result.kept == [original]
        assert result.merged_ids == ["n"]
        assert "pinned" in result.merges[0].note

    def test_two_pinned_both_kept(self):
        a = _entry("a", "deploy with make release", pinned=True)
        b = _entry("b", "Deploy with make release!", pinned=True)
        result = deterministic_compact([a, b], CompactionConfig())
        assert {e.id for e in result.kept} == {"a", "b"}
        assert result.removed_ids == []

    def test_archived_ignored(self):
        live = _entry("a", "alpha")
        old = _entry("b", "alpha", status="archived")
        result = deterministic_compact([live, old], CompactionConfig())
        assert [e.id for e in result.kept] == ["a"]
        assert result.removed_ids == []


class TestEviction:
    def test_lowest_value_evicted_first(self):
        entries = [
            _entry("p", "pinned rule", pinned=True, updated="2026-01-01T00:00:00"),
            _entry("x", "often used", access=5, updated="2026-01-02T00:00:00"),
            _entry("y", "older unused", updated="2026-01-03T00:00:00"),
            _entry("z", "newer unused", updated="2026-01-04T00:00:00"),
        ]
        result = deterministic_compact(entries, CompactionConfig(cap=2))
        assert [e.id for e in result.kept] == ["p", "x"]
        assert result.evicted_ids == ["y", "z"]

    def test_pinned_never_evicted(self):
        entries = [
            _entry("a", "first pinned", pinned=True),
            _entry("b", "second pinned", pinned=True),
        ]
        result = deterministic_compact(entries, CompactionConfig(cap=1))
        assert len(result.kept) == 2


class TestContract:
    def test_display_order(self):
        entries = [
            _entry("a", "old note", updated="2026-01-01T00:00:00"),
            _entry("b", "new note", updated="2026-03-01T00:00:00"),
            _entry("c", "pinned note", pinned=True, updated="2025-01-01T00:00:00"),
        ]
        result = deterministic_compact(entries, CompactionConfig())
        assert [e.id for e in result.kept] == ["c", "b", "a"]

    def test_input_not_mutated(self):
        a = _entry("a", "run the unit tests with pytest nightly")
        b = _entry("b", "run the unit tests with pytest often")
        before = [a.to_dict(), b.to_dict()]
        deterministic_compact([a, b], CompactionConfig(duplicate_threshold=0.7, cap=1))
        assert [a.to_dict(), b.to_dict()] == before

    def test_deterministic(self):
        entries = [_entry(str(i), f"note number {i % 3}") for i in range(9)]
        cfg = CompactionConfig(cap=2)
        assert deterministic_compact(entries, cfg) == deterministic_compact(entries, cfg)


# ---------------------------------------------------------------------------
# Refinement
# ---------------------------------------------------------------------------


@pytest.fixture
def entries():
    return [
        _entry("p1", "Never force-push to main", category="workflow", pinned=True),
        _entry("n1", "Use pnpm for installs", category="workflow"),
        _entry("n2", "Prefer pnpm over npm", category="workflow"),
        _entry("f1", "The API lives in services/api", category="fact"),
    ]


def _assert_fallback(result, entries, cfg):
    base = deterministic_compact(entries, cfg)
    assert result.used_fallback is True
    assert result.kept == base.kept
    assert result.merged_ids == base.merged_ids
    assert result.evicted_ids == base.evicted_ids


class TestRefinement:
    def test_disabled(self, entries):
        cfg = CompactionConfig(llm_enabled=False)
        provider = FakeProvider(_payload())
        result = CompactionEngine(cfg, provider).compact(entries)
        _assert_fallback(result, entries, cfg)
        assert result.mode == "deterministic"
        assert provider.calls == []

    def test_nothing_to_refine(self):
        only_pinned = [_entry("p", "keep me", pinned=True)]
        provider = FakeProvider(_payload())
        result = CompactionEngine(CompactionConfig(), provider).compact(only_pinned)
        assert result.used_fallback is True
        assert result.reason == "nothing to refine"
        assert provider.calls == []

    def test_merge_applied(self, entries):
        provider = FakeProvider(_payload(merges=[
            {"ids": ["n1", "n2"], "content": "Use pnpm, never npm"},
        ]))
        result = CompactionEngine(CompactionConfig(), provider).compact(entries)
        assert result.mode == "llm"
        assert result.used_fallback is False
        kept = {e.id: e for e in result.kept}
        assert kept["n1"].content == "Use pnpm, never npm"
        assert "n2" not in kept
        assert result.merged_ids == ["n2"]
        assert kept["p1"] == entries[0]

    def test_several_long_merges_fit_default_limit(self):
        group = [
            _entry("a1", "Use pnpm for installs in the web app", category="workflow"),
            _entry("a2", "Prefer pnpm over npm in the web app", category="workflow"),
            _entry("b1", "Run the unit tests with pytest", category="workflow"),
            _entry("b2", "Tests also run in CI on every push", category="workflow"),
        ]
        long_a = " ".join(f"Install step {i} of the web app uses pnpm." for i in range(18))
        long_b = " ".join(f"Test stage {i} runs pytest locally and in CI." for i in range(17))
        assert 700 < len(long_a) <= 1200 and 700 < len(long_b) <= 1200
        provider = FakeProvider(_payload(merges=[
            {"ids": ["a1", "a2"], "content": long_a},
            {"ids": ["b1", "b2"], "content": long_b},
        ]))
        result = CompactionEngine(CompactionConfig(), provider).compact(group)
        assert result.used_fallback is False
        assert result.mode == "llm"
        assert sorted(result.merged_ids) == ["a2", "b2"]
        kept = {e.id: e.content for e in result.kept}
        assert kept == {"a1": long_a, "b1": long_b}

    def test_request_marks_pinned(self, entries):
        provider = FakeProvider(_payload())
        CompactionEngine(CompactionConfig(), provider).compact(entries)
        [request] = provider.calls
        workflow = request["categories"]["workflow"]
        assert {"id": "p1", "content": "Never force-push to main", "pinned": True} in workflow

    def test_drops_and_summaries(self, entries):
        provider = FakeProvider(_payload(
            drops=["n2"],
            summaries=[{"id": "f1", "content": "API: services/api"}],
        ))
        result = CompactionEngine(CompactionConfig(), provider).compact(entries)
        kept = {e.id: e for e in result.kept}
        assert result.evicted_ids == ["n2"]
        assert kept["f1"].content == "API: services/api"

    @pytest.mark.parametrize("payload", [
        {"drops": ["p1"]},
        {"summaries": [{"id": "p1", "content": "rewritten"}]},
        {"drops": ["ghost"]},
        {"drops": ["n1", "n1"]},
        {"merges": [{"ids": ["n1", "f1"], "content": "mixed"}]},
        {"summaries": [{"id": "n1", "content": "key sk-abcdefghijklmnop1234"}]},
        {"summaries": [{"id": "n1", "content": "   "}]},
    ])
    def test_unsafe_suggestion_falls_back(self, entries, payload):
        cfg = CompactionConfig()
        provider = FakeProvider(json.dumps(payload))
        result = CompactionEngine(cfg, provider).compact(entries)
        _assert_fallback(result, entries, cfg)
        assert result.mode == "llm_fallback"
        assert result.reason.startswith("unsafe suggestion")

    def test_provider_error_falls_back(self, entries):
        cfg = CompactionConfig()
        provider = FakeProvider(error=CompactionProviderError("OPENAI_API_KEY is not set"))
        result = CompactionEngine(cfg, provider).compact(entries)
        _assert_fallback(result, entries, cfg)
        assert "not set" in result.reason

    def test_malformed_answer_falls_back(self, entries):
        cfg = CompactionConfig()
        result = CompactionEngine(cfg, FakeProvider("no json here")).compact(entries)
        _assert_fallback(result, entries, cfg)

    def test_timeout_falls_back(self, entries):
        cfg = CompactionConfig()
        provider = FakeProvider(_payload(), block=True)
        try:
            result = CompactionEngine(cfg, provider).compact(entries, timeout=0.1)
        finally:
            provider.release.set()
        _assert_fallback(result, entries, cfg)
        assert "deadline" in result.reason

    def test_cancel_falls_back(self, entries):
        cfg = CompactionConfig()
        provider = FakeProvider(_payload(), block=True)
        cancel = threading.Event()
        cancel.set()
        try:
            result = CompactionEngine(cfg, provider).compact(entries, cancel=cancel)
        finally:
            provider.release.set()
        _assert_fallback(result, entries, cfg)
        assert "cancelled" in result.reason


class TestApplySuggestions:
    def test_empty_payload_is_identity(self, entries):
        base = deterministic_compact(entries, CompactionConfig())
        result = apply_suggestions(base, {"merges": [], "drops": [], "summaries": []})
        assert result.kept == base.kept
        assert result.mode == "llm"
