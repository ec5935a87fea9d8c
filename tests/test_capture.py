"""
Tests for agentmem.capture — transcript heuristics.
"""

import pytest

from agentmem.capture import (
    CaptureEngine,
    cleanup_text,
    infer_category,
    split_turns,
)
from agentmem.config import CaptureConfig


@pytest.fixture
def engine():
    return CaptureEngine()


class TestHelpers:
    def test_cleanup_text(self):
        assert cleanup_text('  "Use  pnpm."  ') == "Use pnpm"

    def test_infer_category(self):
        assert infer_category("I prefer tabs") == "preference"
        assert infer_category("Always run make lint") == "workflow"
        assert infer_category("Never commit to main") == "constraint"
        assert infer_category("The API lives in services/api") == "fact"

    def test_split_turns_labels(self):
        turns = split_turns("user: hi there.\nassistant: hello")
        assert turns == [("user", "hi there."), ("assistant", "hello")]

    def test_split_turns_inline_label(self):
        turns = split_turns("user: hi there. assistant: hello")
        assert turns == [("user", "hi there."), ("assistant", "hello")]

    def test_split_turns_aliases(self):
        assert split_turns("Human: a\nAI: b") == [("user", "a"), ("assistant", "b")]

    def test_split_turns_unlabelled_blocks(self):
        assert split_turns("first\n\nsecond") == [("user", "first"), ("user", "second")]

    def test_split_turns_preamble(self):
        turns = split_turns("context line\nuser: x")
        assert turns == [("user", "context line"), ("user", "x")]


class TestPhrasing:
    def test_explicit_remember(self, engine):
        transcript = "user: Please remember that we deploy with make release.\nassistant: Noted."
        candidates = engine.propose(transcript)
        assert len(candidates) == 1
        c = candidates[0]
        assert c.raw_text == "we deploy with make release"
        assert c.confidence == 0.6
        assert c.rationale == "explicit"
        assert c.first_turn == 0
        assert c.state == "pending"
        assert c.entry_id is None

    def test_preference(self, engine):
        [c] = engine.propose("user: I prefer tabs over spaces in Makefiles.")
        assert c.proposed_category == "preference"
        assert c.confidence == 0.55
        assert c.rationale == "preference"

    def test_assistant_note(self, engine):
        [c] = engine.propose("assistant: Memory: the repo uses Bazel for builds")
        assert c.raw_text == "the repo uses Bazel for builds"
        assert c.rationale == "assistant-note"

    def test_unlabelled_text_is_user(self, engine):
        [c] = engine.propose("Please remember to run make lint before pushing")
        assert c.raw_text == "to run make lint before pushing"
        assert c.proposed_category == "workflow"

    def test_plain_statement_ignored(self, engine):
        assert engine.propose("user: The weather is nice today.") == []

    def test_system_turns_ignored(self, engine):
        assert engine.propose("system: Always use pnpm for installs.") == []

    def test_plain_assistant_text_ignored(self, engine):
        assert engine.propose("assistant: I will always use pnpm from now on.") == []


class TestSignals:
    def test_correction_outranks_original(self, engine):
        transcript = (
            "user: Use npm for installs.\n"
            "assistant: Okay.\n"
            "user: Actually, use pnpm instead of npm."
        )
        candidates = engine.propose(transcript)
        assert [c.raw_text for c in candidates] == [
            "use pnpm instead of npm", "Use npm for installs",
        ]
        first = candidates[0]
        assert first.confidence == 0.65
        assert first.rationale == "directive+correction"
        assert first.first_turn == 2

    def test_repetition(self, engine):
        transcript = (
            "user: The staging database is read only.\n"
            "assistant: Understood.\n"
            "user: The staging database is read only!"
        )
        [c] = engine.propose(transcript)
        assert c.rationale == "repetition"
        assert c.confidence == 0.35
        assert c.first_turn == 0

    def test_repetition_bonus_capped(self, engine):
        line = "user: Remember to squash commits before merging.\n"
        [c] = engine.propose(line * 5)
        assert c.confidence == pytest.approx(0.9)
        assert c.rationale == "explicit+repetition"


class TestFiltering:
    def test_secret_blocked(self, engine):
        assert engine.propose("user: Remember my key is sk-abcdefghijklmnop1234") == []

    def test_too_short(self, engine):
        assert engine.propose("user: remember tabs") == []

    def test_empty(self, engine):
        assert engine.propose("") == []
        assert engine.propose("   \n  ") == []

    def test_max_candidates(self):
        engine = CaptureEngine(CaptureConfig(max_candidates=2))
        transcript = "\n".join(
            f"user: Remember that service {name} listens on port {port}."
            for name, port in (("alpha", 8001), ("beta", 8002), ("gamma", 8003))
        )
        candidates = engine.propose(transcript)
        assert len(candidates) == 2
        # Equal confidence keeps transcript order
        assert "alpha" in candidates[0].raw_text
        assert "beta" in candidates[1].raw_text


class TestMessages:
    def test_message_list(self, engine):
        messages = [
            {"role": "user", "content": "I prefer short commit messages."},
            {"role": "assistant", "content": [
                {"type": "text", "text": "Memory: CI runs on GitHub Actions"},
                {"type": "image", "source": "ignored"},
            ]},
            "not a message",
        ]
        candidates = engine.propose_messages(messages)
        assert [c.rationale for c in candidates] == ["preference", "assistant-note"]

    def test_pure(self, engine):
        transcript = "user: Remember that releases are cut on Fridays."
        assert engine.propose(transcript) == engine.propose(transcript)
