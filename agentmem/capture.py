"""
Heuristic Capture — propose memories from transcript text.

Three independent signals are scored and added up:

- phrasing: explicit "remember ..." requests, stated preferences, assistant
  "Memory: ..." notes, and directives ("always/never/must ...", "use X");
- repetition: the same normalized statement in more than one turn;
- correction: "actually, ...", "no, ...", "X instead of Y", "not X but Y".

propose() reads nothing but its argument and never writes anywhere;
accepting a candidate is a separate add() by the caller.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from agentmem.config import CaptureConfig
from agentmem.policy import screen_content
from agentmem.similarity import normalize
from agentmem.types import CaptureCandidate

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

SCORE_EXPLICIT = 0.6
SCORE_PREFERENCE = 0.55
SCORE_ASSISTANT_NOTE = 0.55
SCORE_STRONG_DIRECTIVE = 0.45
SCORE_DIRECTIVE = 0.35
SCORE_PLAIN = 0.2
BONUS_CORRECTION = 0.3
BONUS_REPEAT_PER_TURN = 0.15
BONUS_REPEAT_MAX = 0.3

# Order in which heuristic tags appear in a rationale.
_TAG_ORDER = (
    "explicit", "preference", "assistant-note", "directive",
    "correction", "repetition",
)

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_ROLE_RE = re.compile(
    r"(?im)(?:^|(?<=[.!?])[ \t]+)[ \t]*(user|assistant|human|ai|system)[ \t]*:[ \t]*"
)
_ROLE_ALIASES = {"human": "user", "ai": "assistant"}

_BLANK_LINE_RE = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_BULLET_RE = re.compile(r"^(?:[-*+•]|\d+[.)])\s+")
_WS_RE = re.compile(r"\s+")

_LEADING_FILLER = r"(?:(?:please|also|and|oh|so|ok|okay|can\s+you|could\s+you)[,]?\s+)*"
_REMEMBER_RE = re.compile(
    rf"(?i)^{_LEADING_FILLER}(?:remember|note)(?:\s+that)?[,:]?\s+(.+)$"
)
_PREFERENCE_RE = re.compile(
    r"(?i)\b(?:my\s+preference\s+is|i\s+(?:really\s+|generally\s+|usually\s+)?prefer"
    r"|i\s+(?:always\s+)?like\s+to|i\s+don'?t\s+like)\b"
)
_ASSISTANT_NOTE_RE = re.compile(r"(?i)^(?:memory|remember)\s*:\s*(.+)$")
_STRONG_DIRECTIVE_RE = re.compile(
    r"(?i)\b(?:always|never|must|mustn'?t|don'?t|do\s+not|make\s+sure)\b"
)
_DIRECTIVE_RE = re.compile(
    rf"(?i)^{_LEADING_FILLER}(?:use|prefer|avoid|run|keep|write|format|put|stick\s+to)\b"
)
_CORRECTION_PREFIX_RE = re.compile(
    r"(?i)^(?:(?:actually|correction|i\s+meant|to\s+clarify)\b[\s,:;-]*"
    r"|(?:no|nope|wait|sorry)[,:;!.]+\s*)(.+)$"
)
_CORRECTION_INLINE_RE = re.compile(
    r"(?i)(?:\binstead\s+of\b|\binstead\b\s*$|^not\s+.+?,?\s+but\s+)"
)

_QUOTE_CHARS = "`\"'“”‘’"


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def cleanup_text(value: str) -> str:
    """Strip wrapping quotes, collapse whitespace, drop trailing punctuation."""
    text = value.strip().strip(_QUOTE_CHARS)
    text = _WS_RE.sub(" ", text)
    return text.rstrip(";:,.!?").strip()


def infer_category(text: str) -> str:
    """Keyword-based category guess for captured text."""
    lower = text.lower()
    if any(k in lower for k in ("prefer", "preference", "like", "dislike")):
        return "preference"
    if any(k in lower for k in ("always", "usually", "workflow", "run", "command",
                                "format", "style")):
        return "workflow"
    if any(k in lower for k in ("never", "must", "mustn't", "do not", "don't",
                                "avoid", "required", "forbid")):
        return "constraint"
    return "fact"


def split_turns(transcript: str) -> List[Tuple[str, str]]:
    """Split transcript text into (role, text) turns.

    Role labels ("user:", "assistant:", "human:", "ai:", "system:") start a
    turn at the beginning of a line or after a sentence end. Without any
    label, blank-line separated blocks are user turns.
    """
    labels = list(_ROLE_RE.finditer(transcript))
    if not labels:
        return [
            ("user", block.strip())
            for block in _BLANK_LINE_RE.split(transcript)
            if block.strip()
        ]
    turns: List[Tuple[str, str]] = []
    preamble = transcript[: labels[0].start()].strip()
    if preamble:
        turns.append(("user", preamble))
    for i, match in enumerate(labels):
        end = labels[i + 1].start() if i + 1 < len(labels) else len(transcript)
        role = match.group(1).lower()
        text = transcript[match.end():end].strip()
        if text:
            turns.append((_ROLE_ALIASES.get(role, role), text))
    return turns


def _sentences(text: str) -> Iterator[str]:
    for line in text.splitlines():
        line = _BULLET_RE.sub("", line.strip())
        if not line:
            continue
        for sentence in _SENTENCE_SPLIT_RE.split(line):
            sentence = sentence.strip()
            if sentence:
                yield sentence


def _message_text(content: Any) -> str:
    """Text of a chat message content (string or list of text blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(c for c in chunks if c.strip())
    return ""


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class _Observation:
    text: str
    first: int
    turns: Set[int] = field(default_factory=set)
    base: float = 0.0
    tags: Set[str] = field(default_factory=set)


class CaptureEngine:
    """Stateless proposer of capture candidates."""

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()

    def propose(self, transcript: str) -> List[CaptureCandidate]:
        """Candidates found in transcript, best first."""
        if not transcript or not transcript.strip():
            return []
        return self._propose_turns(split_turns(transcript))

    def propose_messages(self, messages: Iterable[Dict[str, Any]]) -> List[CaptureCandidate]:
        """Same as propose() for a ``[{"role", "content"}]`` message list."""
        turns: List[Tuple[str, str]] = []
        for message in messages:
            if not isinstance(message, dict):
                continue
            role = str(message.get("role", "")).lower()
            text = _message_text(message.get("content"))
            if role and text.strip():
                turns.append((_ROLE_ALIASES.get(role, role), text))
        return self._propose_turns(turns)

    # -- Internals ---------------------------------------------------------

    def _analyze(self, role: str, sentence: str) -> Optional[Tuple[str, float, Set[str]]]:
        """Statement text, phrasing score and tags for one sentence."""
        if role == "assistant":
            m = _ASSISTANT_NOTE_RE.match(sentence)
            if m:
                return m.group(1), SCORE_ASSISTANT_NOTE, {"assistant-note"}
            return None
        if role != "user":
            return None

        tags: Set[str] = set()
        text = sentence
        m = _CORRECTION_PREFIX_RE.match(text)
        if m:
            text = m.group(1)
            tags.add("correction")
        elif _CORRECTION_INLINE_RE.search(text):
            tags.add("correction")

        score = 0.0
        m = _REMEMBER_RE.match(text)
        if m:
            text = m.group(1)
            score = SCORE_EXPLICIT
            tags.add("explicit")
        elif _PREFERENCE_RE.search(text):
            score = SCORE_PREFERENCE
            tags.add("preference")
        elif _STRONG_DIRECTIVE_RE.search(text):
            score = SCORE_STRONG_DIRECTIVE
            tags.add("directive")
        elif _DIRECTIVE_RE.match(text):
            score = SCORE_DIRECTIVE
            tags.add("directive")
        return text, score, tags

    def _acceptable(self, text: str) -> bool:
        if not (self.config.min_chars <= len(text) <= self.config.max_chars):
            return False
        return screen_content(text).accepted

    def _propose_turns(self, turns: List[Tuple[str, str]]) -> List[CaptureCandidate]:
        observations: Dict[str, _Observation] = {}
        order = 0
        for turn_index, (role, text) in enumerate(turns):
            for sentence in _sentences(text):
                analyzed = self._analyze(role, sentence)
                if analyzed is None:
                    continue
                statement, score, tags = analyzed
                cleaned = cleanup_text(statement)
                if not self._acceptable(cleaned):
                    continue
                key = normalize(cleaned)
                if not key:
                    continue
                obs = observations.get(key)
                if obs is None:
                    obs = _Observation(text=cleaned, first=order)
                    observations[key] = obs
                    order += 1
                obs.turns.add(turn_index)
                obs.base = max(obs.base, score)
                obs.tags |= tags

        ranked: List[Tuple[int, CaptureCandidate]] = []
        for obs in observations.values():
            tags = set(obs.tags)
            repeats = len(obs.turns) - 1
            if repeats > 0:
                tags.add("repetition")
            if not tags:
                continue
            confidence = obs.base or SCORE_PLAIN
            if "correction" in tags:
                confidence += BONUS_CORRECTION
            if repeats > 0:
                confidence += min(BONUS_REPEAT_MAX, BONUS_REPEAT_PER_TURN * repeats)
            category = "preference" if "preference" in tags else infer_category(obs.text)
            ranked.append((obs.first, CaptureCandidate(
                raw_text=obs.text,
                proposed_category=category,
                confidence=round(min(1.0, confidence), 3),
                rationale="+".join(t for t in _TAG_ORDER if t in tags),
                first_turn=min(obs.turns),
                state="pending",
            )))

        ranked.sort(key=lambda r: (-r[1].confidence, r[0]))
        result = [c for _, c in ranked[: self.config.max_candidates]]
        logger.debug("Proposed %d capture candidate(s)", len(result))
        return result
