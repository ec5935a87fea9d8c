"""
Engine Configuration

Configuration dataclasses for agentmem: store, listing limits, search
ranking, auto-capture, compaction, document sync and retention. Each
section validates itself and returns a list of error messages.

ConfigManager owns ``config.json`` under the storage root: a missing file is
created with defaults; an unreadable or invalid file is moved aside to
``config.invalid-<timestamp>.json.bak`` and replaced by defaults. Startup
never aborts on a bad config file.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from agentmem.fileio import atomic_write_text
from agentmem.types import AgentMemError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"
DB_FILENAME = "memory.sqlite"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ConfigInvalid(AgentMemError):
    """A config file failed to parse or validate and was replaced.

    Never raised out of ConfigManager.load(); recorded on
    ``ConfigManager.recovered`` and logged at WARNING.
    """

    def __init__(self, path: Path, backup: Optional[Path], reason: str):
        self.path = path
        self.backup = backup
        self.reason = reason
        super().__init__(
            f"Invalid config {path}: {reason}"
            + (f" (backed up to {backup.name})" if backup else "")
        )


def _check_type(errors: List[str], name: str, value, typ) -> bool:
    """Append an error if value is not of typ. Bools never pass as numbers."""
    if typ is float:
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        if ok and not math.isfinite(value):
            errors.append(f"{name}: {value} is not a finite number")
            return False
    elif typ is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, typ)
    if not ok:
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
    return ok


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not _check_type(errors, name, value, typ):
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.busy_timeout_ms",
                     self.busy_timeout_ms, 100, 600_000, int)
        _check_type(errors, "store.wal_mode", self.wal_mode, bool)
        return errors


@dataclass
class LimitsConfig:
    """Default page sizes for list and search."""
    list_limit: int = 50
    search_limit: int = 20

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "limits.list_limit", self.list_limit, 1, 1000, int)
        _check_range(errors, "limits.search_limit", self.search_limit, 1, 1000, int)
        return errors


@dataclass
class SearchConfig:
    """Token-overlap ranking parameters."""
    pinned_boost: float = 0.25

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.pinned_boost", self.pinned_boost, 0.0, 10.0, float)
        return errors


@dataclass
class CaptureConfig:
    """Heuristic auto-capture configuration."""
    enabled: bool = True
    min_confidence: float = 0.5
    min_chars: int = 12
    max_chars: int = 240
    max_candidates: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_type(errors, "capture.enabled", self.enabled, bool)
        _check_range(errors, "capture.min_confidence",
                     self.min_confidence, 0.0, 1.0, float)
        _check_range(errors, "capture.min_chars", self.min_chars, 1, 1200, int)
        _check_range(errors, "capture.max_chars", self.max_chars, 1, 1200, int)
        _check_range(errors, "capture.max_candidates",
                     self.max_candidates, 1, 100, int)
        if not errors and self.min_chars > self.max_chars:
            errors.append(
                f"capture.min_chars ({self.min_chars}) exceeds "
                f"capture.max_chars ({self.max_chars})"
            )
        return errors


@dataclass
class CompactionConfig:
    """Compaction and LLM refinement configuration."""
    cap: int = 200
    duplicate_threshold: float = 0.8
    llm_enabled: bool = True
    model: str = "gpt-5-mini"
    endpoint: str = "https://api.openai.com/v1/responses"
    api_key_env: str = "OPENAI_API_KEY"
    timeout_ms: int = 8000
    max_output_chars: int = 20000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "compaction.cap", self.cap, 1, 100_000, int)
        _check_range(errors, "compaction.duplicate_threshold",
                     self.duplicate_threshold, 0.0, 1.0, float)
        _check_type(errors, "compaction.llm_enabled", self.llm_enabled, bool)
        for name in ("model", "endpoint", "api_key_env"):
            value = getattr(self, name)
            if _check_type(errors, f"compaction.{name}", value, str) and not value.strip():
                errors.append(f"compaction.{name}: must not be empty")
        _check_range(errors, "compaction.timeout_ms",
                     self.timeout_ms, 100, 120_000, int)
        _check_range(errors, "compaction.max_output_chars",
                     self.max_output_chars, 100, 100_000, int)
        return errors


@dataclass
class SyncConfig:
    """Managed-block rendering configuration."""
    document: str = "AGENTS.md"
    max_items: int = 10
    max_chars: int = 3000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if _check_type(errors, "sync.document", self.document, str) and not self.document.strip():
            errors.append("sync.document: must not be empty")
        _check_range(errors, "sync.max_items", self.max_items, 1, 1000, int)
        _check_range(errors, "sync.max_chars", self.max_chars, 200, 200_000, int)
        return errors


@dataclass
class RetentionConfig:
    """Event log retention."""
    event_days: int = 180

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "retention.event_days", self.event_days, 1, 36500, int)
        return errors


_SECTIONS = {
    "store": StoreConfig,
    "limits": LimitsConfig,
    "search": SearchConfig,
    "capture": CaptureConfig,
    "compaction": CompactionConfig,
    "sync": SyncConfig,
    "retention": RetentionConfig,
}


@dataclass
class EngineConfig:
    """Top-level agentmem configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> EngineConfig:
        """Build config from a nested dict (e.g. JSON).

        Unknown sections or keys raise TypeError: a persisted file must
        match this schema exactly.
        """
        if not isinstance(d, dict):
            raise TypeError(f"config root must be an object, got {type(d).__name__}")
        unknown = sorted(set(d) - set(_SECTIONS))
        if unknown:
            raise TypeError(f"unknown config section(s): {', '.join(unknown)}")
        kwargs: Dict[str, Any] = {}
        for name, section_cls in _SECTIONS.items():
            if name not in d:
                continue
            section = d[name]
            if not isinstance(section, dict):
                raise TypeError(f"section '{name}' must be an object")
            known = {f.name for f in fields(section_cls)}
            extra = sorted(set(section) - known)
            if extra:
                raise TypeError(f"unknown key(s) in '{name}': {', '.join(extra)}")
            kwargs[name] = section_cls(**section)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a nested dict."""
        return asdict(self)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        for name in _SECTIONS:
            errors.extend(getattr(self, name).validate())
        return errors


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


def _backup_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


class ConfigManager:
    """Load, repair and persist ``config.json`` under a storage root."""

    def __init__(self, storage_root: Union[str, Path]):
        self.storage_root = Path(storage_root)
        self.path = self.storage_root / CONFIG_FILENAME
        self.recovered: Optional[ConfigInvalid] = None

    def load(self) -> EngineConfig:
        """Return the persisted config, writing or regenerating defaults."""
        self.recovered = None
        self.storage_root.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            cfg = EngineConfig()
            self.save(cfg)
            logger.info("Wrote default config to %s", self.path)
            return cfg

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = EngineConfig.from_dict(data)
            errors = cfg.validate()
            if errors:
                raise ValueError("; ".join(errors))
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError, ValueError) as e:
            return self._recover(str(e))
        return cfg

    def save(self, cfg: EngineConfig) -> None:
        """Atomically write cfg as pretty JSON."""
        errors = cfg.validate()
        if errors:
            raise ValueError(f"Config validation failed: {'; '.join(errors)}")
        text = json.dumps(cfg.to_dict(), indent=2, sort_keys=False) + "\n"
        atomic_write_text(self.path, text)

    def _backup_path(self) -> Path:
        stamp = _backup_stamp()
        candidate = self.storage_root / f"config.invalid-{stamp}.json.bak"
        n = 1
        while candidate.exists():
            candidate = self.storage_root / f"config.invalid-{stamp}-{n}.json.bak"
            n += 1
        return candidate

    def _recover(self, reason: str) -> EngineConfig:
        backup = self._backup_path()
        self.path.rename(backup)
        cfg = EngineConfig()
        self.save(cfg)
        self.recovered = ConfigInvalid(self.path, backup, reason)
        logger.warning("%s; defaults regenerated", self.recovered)
        return cfg


def load_config(storage_root: Union[str, Path]) -> EngineConfig:
    """Load config from ``<storage_root>/config.json`` (see ConfigManager)."""
    return ConfigManager(storage_root).load()
