"""
Memory Data Model

Defines the persisted memory entry, the validated category newtype, the
transient capture candidate, and the result records returned by the store,
the compaction engine and the document sync engine.

Entries are plain dataclasses; the store owns their identity and timestamps.
"""

from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

# ---------------------------------------------------------------------------
# Type aliases and constants
# ---------------------------------------------------------------------------

Origin = Literal["manual", "captured"]
Status = Literal["active", "archived"]
CandidateState = Literal["pending", "accepted", "rejected"]

VALID_ORIGINS: set = {"manual", "captured"}
VALID_STATUSES: set = {"active", "archived"}

KNOWN_CATEGORIES = (
    "preference", "workflow", "constraint", "fact",
    "decision", "convention", "other",
)
DEFAULT_CATEGORY = "other"

MAX_CONTENT_CHARS = 1200
MAX_CATEGORY_CHARS = 32

_CATEGORY_RE = re.compile(r"^[a-z][a-z0-9_-]*$")
_WS_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AgentMemError(Exception):
    """Base class for every error raised by the memory engine."""


class ValidationError(AgentMemError, ValueError):
    """Raised when entry content or category is rejected."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _generate_id() -> str:
    """Generate a new entry id (UUID4 string)."""
    return str(uuid.uuid4())


def normalize_content(text: str) -> str:
    """Collapse internal whitespace and strip the ends."""
    return _WS_RE.sub(" ", text or "").strip()


def content_hash(text: str) -> str:
    """SHA-256 of the whitespace-normalized content (dedup key, case-sensitive)."""
    key = normalize_content(text)
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def validate_content(text: str) -> str:
    """Return normalized content or raise ValidationError."""
    if not isinstance(text, str):
        raise ValidationError(f"content must be a string, got {type(text).__name__}")
    clean = normalize_content(text)
    if not clean:
        raise ValidationError("content must not be empty")
    if len(clean) > MAX_CONTENT_CHARS:
        raise ValidationError(
            f"content is {len(clean)} chars, limit is {MAX_CONTENT_CHARS}"
        )
    return clean


class Category(str):
    """Open but validated category name.

    Lowercased and stripped on construction; must be non-empty, at most
    MAX_CATEGORY_CHARS long and start with a letter.
    """

    def __new__(cls, value: Any) -> Category:
        if not isinstance(value, str):
            raise ValidationError(
                f"category must be a string, got {type(value).__name__}"
            )
        name = value.strip().lower()
        if not name:
            raise ValidationError("category must not be empty")
        if len(name) > MAX_CATEGORY_CHARS:
            raise ValidationError(
                f"category {value!r} exceeds {MAX_CATEGORY_CHARS} chars"
            )
        if not _CATEGORY_RE.match(name):
            raise ValidationError(
                f"invalid category {value!r}: use letters, digits, '-' or '_'"
            )
        return super().__new__(cls, name)

    @property
    def is_known(self) -> bool:
        """True for one of the well-known category names."""
        return str(self) in KNOWN_CATEGORIES


# ---------------------------------------------------------------------------
# Memory entry
# ---------------------------------------------------------------------------


@dataclass
class MemoryEntry:
    """
    A single persisted memory fact or preference.

    Rules:
    - content is never empty and never longer than MAX_CONTENT_CHARS.
    - id is assigned once by the store and never changes.
    - pinned entries are immutable under compaction.
    """

    content: str
    category: str = DEFAULT_CATEGORY
    id: str = field(default_factory=_generate_id)
    pinned: bool = False
    origin: Origin = "manual"
    access_count: int = 0
    status: Status = "active"
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def __post_init__(self):
        """Validate content, category, origin and status."""
        self.content = validate_content(self.content)
        self.category = str(Category(self.category))
        if self.origin not in VALID_ORIGINS:
            raise ValidationError(f"Invalid origin: {self.origin!r}")
        if self.status not in VALID_STATUSES:
            raise ValidationError(f"Invalid status: {self.status!r}")

    @property
    def content_hash(self) -> str:
        """Dedup key for this entry's content."""
        return content_hash(self.content)

    @property
    def short_id(self) -> str:
        """First eight characters of the id, as shown to humans."""
        return self.id[:8]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryEntry:
        """Deserialize from a dictionary, ignoring unknown keys."""
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


# ---------------------------------------------------------------------------
# Capture candidate (transient)
# ---------------------------------------------------------------------------


@dataclass
class CaptureCandidate:
    """A transcript-derived proposal; becomes an entry only when accepted."""

    raw_text: str
    proposed_category: str = DEFAULT_CATEGORY
    confidence: float = 0.0
    rationale: str = ""
    state: CandidateState = "pending"
    first_turn: int = 0
    entry_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass
class AddResult:
    """Outcome of MemoryStore.add: a new id or the id of a duplicate."""

    id: str
    action: Literal["added", "deduped"] = "added"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)


@dataclass
class MergeNote:
    """Rationale for one compaction merge."""

    kept_id: str
    removed_id: str
    note: str

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)


@dataclass
class CompactionResult:
    """Output of one compaction pass."""

    kept: List[MemoryEntry] = field(default_factory=list)
    merged_ids: List[str] = field(default_factory=list)
    evicted_ids: List[str] = field(default_factory=list)
    merges: List[MergeNote] = field(default_factory=list)
    used_fallback: bool = False
    mode: Literal["deterministic", "llm", "llm_fallback"] = "deterministic"
    reason: Optional[str] = None

    @property
    def removed_ids(self) -> List[str]:
        """Every id absent from the output, merged first then evicted."""
        return self.merged_ids + self.evicted_ids

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return {
            "kept": [e.to_dict() for e in self.kept],
            "removed_ids": self.removed_ids,
            "merged_ids": list(self.merged_ids),
            "evicted_ids": list(self.evicted_ids),
            "merges": [m.to_dict() for m in self.merges],
            "used_fallback": self.used_fallback,
            "mode": self.mode,
            "reason": self.reason,
        }


@dataclass
class SyncResult:
    """Outcome of one document sync."""

    path: str
    changed: bool
    action: Literal["inserted", "replaced", "unchanged"]
    selected: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)
