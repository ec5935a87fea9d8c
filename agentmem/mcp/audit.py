"""
MCP Audit Logger — Structured JSONL records of tool calls.

One line per tool call, schema-versioned:

    {"v":1,"ts":"...","rid":"...","tool":"memory_add","db":".agentmem/memory.sqlite",
     "outcome":"ok","d":{...},"ms":3.2}

Privacy rules:
- Memory text and transcripts are never written: only their SHA-256 and size.
- Paths are workspace-relative when they sit under the workspace.

log() never raises: a broken audit sink must not fail the tool call.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 1


class AuditLogger:
    """Structured JSONL audit logger for MCP tool calls."""

    def __init__(self, output: Optional[TextIO] = None):
        """
        Args:
            output: File handle for audit output. None → stderr.
        """
        self._output = output if output is not None else sys.stderr

    def new_rid(self) -> str:
        """Generate a new request ID (UUID4 hex string)."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        db_path: str,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """
        Write one JSONL audit record.

        Args:
            tool: MCP tool name (e.g. "memory_add").
            rid: Request ID (from new_rid()).
            db_path: Store path (workspace-relative when possible).
            outcome: "ok", "error" or "rejected".
            detail: Tool-specific fields; never raw memory text.
            latency_ms: Wall-clock latency in milliseconds.
        """
        try:
            now = datetime.now(timezone.utc)
            record: Dict[str, Any] = {
                "v": AUDIT_SCHEMA_VERSION,
                "ts": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
                "rid": rid,
                "tool": tool,
                "db": db_path,
                "outcome": outcome,
            }
            if detail:
                record["d"] = detail
            record["ms"] = round(latency_ms, 1)

            line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
            self._output.write(line + "\n")
            self._output.flush()
        except (OSError, ValueError, TypeError) as e:
            logger.debug("Audit record for %s dropped: %s", tool, e)

    @staticmethod
    def make_content_detail(content: str) -> Dict[str, Any]:
        """Size and SHA-256 of caller-supplied text, for correlation only."""
        data = (content or "").encode("utf-8")
        return {
            "bytes": len(data),
            "hash": hashlib.sha256(data).hexdigest(),
        }
