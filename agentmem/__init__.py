"""
agentmem — Durable, bounded memory for a coding agent.

One workspace, one SQLite store. Memories are added by hand or proposed from
transcripts, compacted to stay bounded (pinned entries are never touched),
and mirrored into a managed block of the project's AGENTS.md.
"""

__version__ = "0.1.0"

from agentmem.types import (
    AgentMemError,
    CaptureCandidate,
    Category,
    CompactionResult,
    MemoryEntry,
    SyncResult,
    ValidationError,
)
from agentmem.config import EngineConfig, ConfigManager, load_config
from agentmem.store import MemoryStore, SCHEMA_VERSION
from agentmem.commands import Command, ParseError, parse
from agentmem.engine import MemoryEngine

__all__ = [
    "__version__",
    "AgentMemError",
    "CaptureCandidate",
    "Category",
    "CompactionResult",
    "MemoryEntry",
    "SyncResult",
    "ValidationError",
    "EngineConfig",
    "ConfigManager",
    "load_config",
    "MemoryStore",
    "SCHEMA_VERSION",
    "Command",
    "ParseError",
    "parse",
    "MemoryEngine",
]
