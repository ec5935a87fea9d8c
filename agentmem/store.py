"""
Memory Store — SQLite Persistent Backend

Tables:
    memories            - Memory entries (current state)
    memory_events       - Audit log (append-only, pruned by retention)
    memory_compactions  - One row per applied compaction pass
    schema_meta         - Schema version and provenance

Concurrency: one writer at a time (process lock plus BEGIN IMMEDIATE);
readers use per-thread connections inside deferred transactions, so they
see a consistent WAL snapshot while a write is in flight. In-memory
databases share a single connection under the lock.

Every mutation writes its audit event in the same transaction, and a
transaction either commits completely or leaves nothing behind.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from agentmem.policy import screen_content
from agentmem.similarity import coverage, token_set
from agentmem.types import (
    DEFAULT_CATEGORY,
    VALID_ORIGINS,
    AddResult,
    AgentMemError,
    Category,
    CompactionResult,
    MemoryEntry,
    ValidationError,
    content_hash,
    validate_content,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

ScoredEntry = Tuple[MemoryEntry, float]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class NotFound(AgentMemError, LookupError):
    """No entry matches the requested id or id prefix."""

    def __init__(self, target: str):
        self.target = target
        super().__init__(f"Memory not found: {target}")


class AmbiguousId(AgentMemError, LookupError):
    """An id prefix matches more than one entry."""

    def __init__(self, prefix: str, matches: List[str]):
        self.prefix = prefix
        self.matches = matches
        shown = ", ".join(m[:8] for m in matches[:5])
        super().__init__(
            f"Ambiguous id prefix '{prefix}' matches {len(matches)} entries: {shown}"
        )


class StorageIOError(AgentMemError):
    """The database could not be opened, read or written."""


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    id            TEXT PRIMARY KEY,
    category      TEXT NOT NULL,
    content       TEXT NOT NULL CHECK(length(trim(content)) > 0),
    content_hash  TEXT NOT NULL,
    pinned        INTEGER NOT NULL DEFAULT 0,
    origin        TEXT NOT NULL DEFAULT 'manual' CHECK(origin IN ('manual','captured')),
    access_count  INTEGER NOT NULL DEFAULT 0,
    status        TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active','archived')),
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memory_events (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    action        TEXT NOT NULL,
    memory_id     TEXT,
    details_json  TEXT NOT NULL DEFAULT '{}',
    timestamp     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memory_compactions (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    mode           TEXT NOT NULL,
    input_count    INTEGER NOT NULL,
    output_count   INTEGER NOT NULL,
    merged_count   INTEGER NOT NULL,
    evicted_count  INTEGER NOT NULL,
    used_fallback  INTEGER NOT NULL,
    reason         TEXT,
    created_at     TEXT NOT NULL
);

-- Schema metadata for forward compatibility
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_status ON memories(status);
CREATE INDEX IF NOT EXISTS idx_memories_category ON memories(category);
CREATE INDEX IF NOT EXISTS idx_memories_hash ON memories(status, content_hash);
CREATE INDEX IF NOT EXISTS idx_events_memory ON memory_events(memory_id);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON memory_events(timestamp);
"""

_ID_REF_RE = re.compile(r"^[0-9a-fA-F-]{1,36}$")

_ORDER_BY = "ORDER BY pinned DESC, updated_at DESC, id ASC"


# ---------------------------------------------------------------------------
# Ranking helpers (module-level)
# ---------------------------------------------------------------------------


def rank_by_overlap(
    entries: List[MemoryEntry], query: str, pinned_boost: float,
) -> List[ScoredEntry]:
    """Rank entries by fraction of query tokens present in their content.

    score = |query ∩ entry| / |query|, plus pinned_boost for pinned entries.
    Entries sharing no token with the query are dropped.

    Tie-breaking is by updated_at descending, then id ascending. Python's
    sorted() is stable, so sorting on the weakest key first gives the full
    order.
    """
    terms = token_set(query)
    scored: List[ScoredEntry] = []
    for entry in entries:
        base = coverage(terms, entry.content)
        if base <= 0.0:
            continue
        scored.append((entry, base + (pinned_boost if entry.pinned else 0.0)))
    scored.sort(key=lambda s: s[0].id)
    scored.sort(key=lambda s: s[0].updated_at, reverse=True)
    scored.sort(key=lambda s: s[1], reverse=True)
    return scored


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


class MemoryStore:
    """
    SQLite-backed persistent store for memory entries.

    Thread-safe: one writer via explicit lock, snapshot readers.
    All mutations create audit events.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ):
        """Open (and create if needed) the database.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            busy_timeout_ms: Upper bound on waiting for a database lock.

        Raises:
            StorageIOError: If the database cannot be opened or initialized.
        """
        self._db_path = str(db_path)
        self._busy_timeout_ms = busy_timeout_ms
        self._shared = self._db_path == ":memory:"
        self._lock = threading.Lock()
        self._local = threading.local()
        self._readers: List[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._last_stamp: Optional[datetime] = None
        self._closed = False

        try:
            if not self._shared:
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = self._connect()
            if wal_mode and not self._shared:
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA_SQL)
            # Populate schema_meta (idempotent)
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'agentmem')",
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', datetime('now'))",
            )
        except (sqlite3.Error, OSError) as e:
            raise StorageIOError(f"Cannot open memory store {self._db_path}: {e}") from e
        logger.info("MemoryStore initialized: %s", self._db_path)

    @property
    def db_path(self) -> str:
        """Return the database path."""
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._db_path,
            timeout=self._busy_timeout_ms / 1000.0,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        return conn

    def close(self) -> None:
        """Close the writer and every reader connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            with self._readers_lock:
                for conn in self._readers:
                    conn.close()
                self._readers.clear()
            self._conn.close()

    # -- Transactions ------------------------------------------------------

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction; commit on success, else roll back."""
        with self._lock:
            conn = self._conn
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageIOError(f"Cannot start write transaction: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                if isinstance(e, sqlite3.Error):
                    raise StorageIOError(f"Write failed and was rolled back: {e}") from e
                raise

    def _reader(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        """Consistent snapshot for the duration of the block."""
        if self._shared:
            with self._lock:
                yield self._conn
            return
        try:
            conn = self._reader()
            conn.execute("BEGIN")
        except sqlite3.Error as e:
            raise StorageIOError(f"Cannot start read transaction: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageIOError(f"Read failed: {e}") from e
        finally:
            if conn.in_transaction:
                conn.execute("COMMIT")

    def _stamp(self) -> str:
        """Strictly increasing UTC timestamp (must be called within lock)."""
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now.isoformat(timespec="microseconds")

    # -- Write operations --------------------------------------------------

    def add(
        self,
        content: str,
        category: str = DEFAULT_CATEGORY,
        *,
        pinned: bool = False,
        origin: str = "manual",
    ) -> AddResult:
        """
        Insert a new entry, or touch an active duplicate of the same content.

        Raises:
            ValidationError: empty/oversized content, invalid category or
                origin, or content that looks like a secret.
        """
        text = validate_content(content)
        cat = str(Category(category))
        if origin not in VALID_ORIGINS:
            raise ValidationError(f"Invalid origin: {origin!r}")
        verdict = screen_content(text)
        if not verdict.accepted:
            raise ValidationError("; ".join(verdict.reasons))
        ch = content_hash(text)

        with self._write() as conn:
            now = self._stamp()
            row = conn.execute(
                "SELECT id FROM memories WHERE status='active' AND content_hash=? "
                "AND category=? ORDER BY created_at ASC LIMIT 1",
                (ch, cat),
            ).fetchone()
            if row is not None:
                existing = row["id"]
                conn.execute(
                    "UPDATE memories SET updated_at=?, pinned=MAX(pinned, ?) WHERE id=?",
                    (now, int(pinned), existing),
                )
                self._log_event(conn, "dedupe", existing, {"origin": origin}, now)
                logger.debug("Deduplicated memory %s", existing)
                return AddResult(id=existing, action="deduped")

            entry = MemoryEntry(
                content=text, category=cat, pinned=pinned, origin=origin,
                created_at=now, updated_at=now,
            )
            conn.execute(
                """INSERT INTO memories
                   (id, category, content, content_hash, pinned, origin,
                    access_count, status, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?,?,?,?)""",
                (
                    entry.id, entry.category, entry.content, ch,
                    int(entry.pinned), entry.origin, 0, "active",
                    entry.created_at, entry.updated_at,
                ),
            )
            self._log_event(
                conn, "add", entry.id,
                {"category": cat, "origin": origin, "pinned": pinned}, now,
            )
        logger.debug("Added memory %s (%s)", entry.id, cat)
        return AddResult(id=entry.id, action="added")

    def delete(self, ref: str) -> str:
        """Physically remove an entry. Returns its full id.

        Raises:
            NotFound / AmbiguousId: If ref does not name exactly one entry.
        """
        with self._write() as conn:
            entry_id = self._resolve(conn, ref)
            conn.execute("DELETE FROM memories WHERE id=?", (entry_id,))
            self._log_event(conn, "delete", entry_id, {}, self._stamp())
        logger.debug("Deleted memory %s", entry_id)
        return entry_id

    def pin(self, ref: str, value: bool = True) -> MemoryEntry:
        """Set the pinned flag. No write when already at the target value.

        Raises:
            NotFound / AmbiguousId: If ref does not name exactly one entry.
        """
        with self._write() as conn:
            entry_id = self._resolve(conn, ref)
            row = conn.execute("SELECT * FROM memories WHERE id=?", (entry_id,)).fetchone()
            if bool(row["pinned"]) == bool(value):
                return self._row_to_entry(row)
            now = self._stamp()
            conn.execute(
                "UPDATE memories SET pinned=?, updated_at=? WHERE id=?",
                (int(value), now, entry_id),
            )
            self._log_event(conn, "pin" if value else "unpin", entry_id, {}, now)
            row = conn.execute("SELECT * FROM memories WHERE id=?", (entry_id,)).fetchone()
        return self._row_to_entry(row)

    def apply_compaction(
        self, result: CompactionResult, input_count: int,
    ) -> Dict[str, int]:
        """Persist a compaction result in one transaction.

        Merged survivors are rewritten, merged-away entries deleted, evicted
        entries archived. Pinned rows are never touched, even if they were
        pinned after the snapshot was taken. A merged-away entry is only
        deleted once its survivor holds the merged content (or was pinned in
        the snapshot); otherwise it stays and is counted as skipped.
        """
        counts = {"updated": 0, "deleted": 0, "archived": 0, "skipped": 0}
        kept_by_id = {e.id: e for e in result.kept}
        survivor_of = {m.removed_id: m.kept_id for m in result.merges}
        with self._write() as conn:
            now = self._stamp()
            for entry in result.kept:
                if entry.pinned:
                    continue
                cur = conn.execute(
                    """UPDATE memories
                       SET content=?, content_hash=?, access_count=?,
                           created_at=?, updated_at=?
                       WHERE id=? AND pinned=0 AND status='active'
                         AND (content<>? OR access_count<>? OR updated_at<>?
                              OR created_at<>?)""",
                    (
                        entry.content, content_hash(entry.content),
                        entry.access_count, entry.created_at, entry.updated_at,
                        entry.id, entry.content, entry.access_count,
                        entry.updated_at, entry.created_at,
                    ),
                )
                if cur.rowcount:
                    counts["updated"] += 1
                    self._log_event(conn, "merge", entry.id, {}, now)
            for entry_id in result.merged_ids:
                survivor = self._final_survivor(entry_id, survivor_of, kept_by_id)
                if survivor is None or not self._survivor_holds(conn, survivor):
                    counts["skipped"] += 1
                    logger.warning(
                        "Kept %s: its merge survivor changed since the snapshot", entry_id,
                    )
                    continue
                cur = conn.execute(
                    "DELETE FROM memories WHERE id=? AND pinned=0", (entry_id,),
                )
                if cur.rowcount:
                    counts["deleted"] += 1
                    self._log_event(conn, "subsumed", entry_id, {}, now)
            for entry_id in result.evicted_ids:
                cur = conn.execute(
                    "UPDATE memories SET status='archived', updated_at=? "
                    "WHERE id=? AND pinned=0 AND status='active'",
                    (now, entry_id),
                )
                if cur.rowcount:
                    counts["archived"] += 1
                    self._log_event(conn, "archive", entry_id, {}, now)
            conn.execute(
                """INSERT INTO memory_compactions
                   (mode, input_count, output_count, merged_count,
                    evicted_count, used_fallback, reason, created_at)
                   VALUES (?,?,?,?,?,?,?,?)""",
                (
                    result.mode, input_count, len(result.kept),
                    len(result.merged_ids), len(result.evicted_ids),
                    int(result.used_fallback), result.reason, now,
                ),
            )
        logger.info(
            "Compaction applied: %d updated, %d deleted, %d archived (mode=%s)",
            counts["updated"], counts["deleted"], counts["archived"], result.mode,
        )
        return counts

    @staticmethod
    def _final_survivor(
        entry_id: str,
        survivor_of: Dict[str, str],
        kept_by_id: Dict[str, MemoryEntry],
    ) -> Optional[MemoryEntry]:
        """Follow merge notes from a removed id to the entry that absorbed it."""
        seen = {entry_id}
        current = survivor_of.get(entry_id)
        while current is not None and current not in kept_by_id and current not in seen:
            seen.add(current)
            current = survivor_of.get(current)
        return kept_by_id.get(current) if current is not None else None

    @staticmethod
    def _survivor_holds(conn: sqlite3.Connection, survivor: MemoryEntry) -> bool:
        row = conn.execute(
            "SELECT status, content FROM memories WHERE id=?", (survivor.id,),
        ).fetchone()
        if row is None or row["status"] != "active":
            return False
        return survivor.pinned or row["content"] == survivor.content

    def prune_events(self, older_than_days: int) -> int:
        """Delete audit events older than the retention window."""
        cutoff = (
            datetime.now(timezone.utc) - timedelta(days=older_than_days)
        ).isoformat(timespec="microseconds")
        with self._write() as conn:
            cur = conn.execute("DELETE FROM memory_events WHERE timestamp < ?", (cutoff,))
            removed = cur.rowcount
        return removed

    def optimize(self) -> None:
        """Run SQLite's planner statistics refresh."""
        with self._lock:
            try:
                self._conn.execute("PRAGMA optimize")
            except sqlite3.Error as e:
                raise StorageIOError(f"PRAGMA optimize failed: {e}") from e

    # -- Read operations ---------------------------------------------------

    def resolve_id(self, ref: str) -> str:
        """Resolve a full id or unique id prefix to a full id."""
        with self._read() as conn:
            return self._resolve(conn, ref)

    def get(self, ref: str) -> MemoryEntry:
        """Read one entry by id or prefix; counts as a retrieval."""
        with self._write() as conn:
            entry_id = self._resolve(conn, ref)
            conn.execute(
                "UPDATE memories SET access_count=access_count+1 WHERE id=?",
                (entry_id,),
            )
            row = conn.execute("SELECT * FROM memories WHERE id=?", (entry_id,)).fetchone()
        return self._row_to_entry(row)

    def list(
        self,
        category: Optional[str] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
        include_archived: bool = False,
    ) -> List[MemoryEntry]:
        """List entries: pinned first, most recently updated first, then id."""
        sql, params = self._filter_sql(category, include_archived)
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT * FROM memories{sql} {_ORDER_BY} LIMIT ? OFFSET ?",
                params + [-1 if limit is None else max(0, int(limit)), max(0, int(offset))],
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def count(
        self, category: Optional[str] = None, include_archived: bool = False,
    ) -> int:
        """Number of entries matching the list filter."""
        sql, params = self._filter_sql(category, include_archived)
        with self._read() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS cnt FROM memories{sql}", params,
            ).fetchone()
        return row["cnt"]

    def search(
        self,
        query: str,
        limit: int = 20,
        pinned_boost: float = 0.25,
        category: Optional[str] = None,
    ) -> List[ScoredEntry]:
        """Rank active entries by query-token overlap.

        Returned entries count as retrieved: their access_count is bumped in
        the store and in the returned objects.
        """
        if not token_set(query):
            return []
        entries = self.list(category=category, limit=None)
        hits = rank_by_overlap(entries, query, pinned_boost)[: max(0, int(limit))]
        if hits:
            with self._write() as conn:
                conn.executemany(
                    "UPDATE memories SET access_count=access_count+1 WHERE id=?",
                    [(e.id,) for e, _ in hits],
                )
            for entry, _ in hits:
                entry.access_count += 1
        return hits

    def snapshot(self) -> List[MemoryEntry]:
        """All active entries, ordered by id (input for compaction)."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM memories WHERE status='active' ORDER BY id ASC"
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the memory store."""
        with self._read() as conn:
            total = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories WHERE status='active'"
            ).fetchone()["cnt"]
            pinned = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories WHERE status='active' AND pinned=1"
            ).fetchone()["cnt"]
            archived = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories WHERE status='archived'"
            ).fetchone()["cnt"]
            by_category = {}
            for row in conn.execute(
                "SELECT category, COUNT(*) AS cnt FROM memories "
                "WHERE status='active' GROUP BY category ORDER BY category"
            ).fetchall():
                by_category[row["category"]] = row["cnt"]
            by_origin = {}
            for row in conn.execute(
                "SELECT origin, COUNT(*) AS cnt FROM memories "
                "WHERE status='active' GROUP BY origin ORDER BY origin"
            ).fetchall():
                by_origin[row["origin"]] = row["cnt"]
            last = conn.execute(
                "SELECT MAX(created_at) AS ts FROM memory_compactions"
            ).fetchone()["ts"]
            events = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memory_events"
            ).fetchone()["cnt"]
        return {
            "total": total,
            "pinned_count": pinned,
            "archived_count": archived,
            "per_category_counts": by_category,
            "per_origin_counts": by_origin,
            "last_compaction_at": last,
            "events_count": events,
            "db_path": self._db_path,
        }

    def read_events(
        self, memory_id: Optional[str] = None, limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Most recent audit events first, optionally for one entry."""
        with self._read() as conn:
            if memory_id:
                rows = conn.execute(
                    "SELECT * FROM memory_events WHERE memory_id=? "
                    "ORDER BY id DESC LIMIT ?",
                    (memory_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM memory_events ORDER BY id DESC LIMIT ?", (limit,),
                ).fetchall()
        return [
            {
                "action": r["action"],
                "memory_id": r["memory_id"],
                "details": json.loads(r["details_json"]),
                "timestamp": r["timestamp"],
            }
            for r in rows
        ]

    # -- Internals ---------------------------------------------------------

    @staticmethod
    def _filter_sql(
        category: Optional[str], include_archived: bool,
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if not include_archived:
            clauses.append("status='active'")
        if category:
            clauses.append("category=?")
            params.append(str(Category(category)))
        sql = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return sql, params

    @staticmethod
    def _resolve(conn: sqlite3.Connection, ref: str) -> str:
        ref = (ref or "").strip().lower()
        if not _ID_REF_RE.match(ref):
            raise NotFound(ref)
        row = conn.execute("SELECT id FROM memories WHERE id=?", (ref,)).fetchone()
        if row is not None:
            return row["id"]
        rows = conn.execute(
            "SELECT id FROM memories WHERE id LIKE ? ORDER BY id LIMIT 6",
            (ref + "%",),
        ).fetchall()
        if not rows:
            raise NotFound(ref)
        if len(rows) > 1:
            raise AmbiguousId(ref, [r["id"] for r in rows])
        return rows[0]["id"]

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            category=row["category"],
            content=row["content"],
            pinned=bool(row["pinned"]),
            origin=row["origin"],
            access_count=row["access_count"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _log_event(
        conn: sqlite3.Connection, action: str, memory_id: Optional[str],
        details: Dict[str, Any], timestamp: str,
    ) -> None:
        """Write an audit event (must be called within a write transaction)."""
        conn.execute(
            """INSERT INTO memory_events (action, memory_id, details_json, timestamp)
               VALUES (?,?,?,?)""",
            (action, memory_id, json.dumps(details), timestamp),
        )
