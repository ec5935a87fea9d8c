"""
Workspace Guard — Path containment for externally supplied paths.

Every path that reaches the engine from a caller (tool ``cwd``, export
target, sync document) is canonicalized (``..`` segments and symlinks
resolved) and must land at or below the workspace root. Violations are
rejected, never clamped, and logged as security-relevant events.

The guard is instantiated once per engine and shared across all calls.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

from agentmem.types import AgentMemError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class PathViolation(AgentMemError, ValueError):
    """Raised when a path escapes the workspace root.

    ``candidate`` is the input exactly as supplied.
    """

    def __init__(self, candidate: PathLike, root: PathLike, reason: str = ""):
        self.candidate = str(candidate)
        self.root = str(root)
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Path '{self.candidate}' is outside workspace '{self.root}'{detail}"
        )


def resolve(candidate: PathLike, root: PathLike) -> Path:
    """
    Resolve candidate against root and verify containment.

    Algorithm:
    1. Reject empty input.
    2. Resolve: relative paths are joined to the canonical root, then
       Path.resolve(strict=False) follows symlinks and folds '..'.
    3. Containment: the result must equal root or be nested under it.

    Raises PathViolation echoing the original input.
    """
    raw = str(candidate)
    canonical_root = Path(root).resolve()
    if not raw.strip():
        raise PathViolation(raw, canonical_root, "empty path")
    if "\x00" in raw:
        raise PathViolation(raw, canonical_root, "NUL byte in path")

    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = canonical_root / path
    resolved = path.resolve()

    try:
        resolved.relative_to(canonical_root)
    except ValueError:
        logger.warning(
            "Path violation rejected: %r resolves to %s, outside %s",
            raw, resolved, canonical_root,
        )
        raise PathViolation(raw, canonical_root) from None
    return resolved


class WorkspaceGuard:
    """Path validation bound to one workspace root."""

    def __init__(self, root: PathLike):
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        """Return the canonical workspace root."""
        return self._root

    def resolve(self, candidate: PathLike) -> Path:
        """Resolve candidate under this guard's root (see module resolve())."""
        return resolve(candidate, self._root)

    def check_cwd(self, cwd: PathLike) -> Path:
        """Validate a caller-reported working directory."""
        return self.resolve(cwd)

    def relative(self, resolved: Path) -> str:
        """
        Return a root-relative path string for log and audit output.

        Never leaks the absolute path of something inside the root.
        """
        try:
            rel = resolved.relative_to(self._root)
        except ValueError:
            return str(resolved)
        return str(rel) or "."
