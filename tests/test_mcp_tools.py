"""
Tests for all 12 MCP tools in agentmem.mcp.tools.

Tools are called directly (not over the MCP protocol) through a mock FastMCP.
"""

import io
import json

import pytest

from agentmem.agents_sync import START_MARKER
from agentmem.engine import MemoryEngine
from agentmem.guard import PathViolation
from agentmem.llm import CompactionProviderError, RefinementProvider
from agentmem.mcp.audit import AuditLogger
from agentmem.mcp.tools import error_kind, error_response, register_memory_tools
from agentmem.store import AmbiguousId, NotFound, StorageIOError


# ---------------------------------------------------------------------------
# Mock FastMCP
# ---------------------------------------------------------------------------


class MockMCP:
    """Minimal FastMCP mock that captures tool registrations."""

    def __init__(self):
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn
        return decorator


class EmptyProvider(RefinementProvider):
    def complete(self, system, user, timeout):
        return "{}"


@pytest.fixture
def mcp_env(tmp_path):
    """Create engine, audit buffer, mock MCP, and register all tools."""
    workspace = tmp_path / "ws"
    workspace.mkdir()
    engine = MemoryEngine(workspace, provider=EmptyProvider())
    buf = io.StringIO()
    mcp = MockMCP()
    register_memory_tools(mcp, engine, audit=AuditLogger(output=buf))
    yield {
        "mcp": mcp,
        "engine": engine,
        "workspace": workspace,
        "audit": buf,
    }
    engine.close()


def call(env, tool_name, **kwargs):
    """Call a registered MCP tool by name."""
    return env["mcp"].tools[tool_name](**kwargs)


def audit_records(env):
    return [json.loads(line) for line in env["audit"].getvalue().splitlines() if line]


# ---------------------------------------------------------------------------
# Tool count
# ---------------------------------------------------------------------------


class TestToolCount:
    def test_12_tools_registered(self, mcp_env):
        assert len(mcp_env["mcp"].tools) == 12

    def test_all_tool_names(self, mcp_env):
        expected = {
            "memory_add", "memory_list", "memory_search", "memory_delete",
            "memory_pin", "memory_auto", "memory_capture_candidates",
            "memory_stats", "memory_refresh", "memory_sync_agents",
            "memory_export", "memory_command",
        }
        assert set(mcp_env["mcp"].tools.keys()) == expected


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


class TestMemoryAdd:
    def test_add(self, mcp_env):
        result = call(mcp_env, "memory_add", content="Use pnpm", category="preference")
        assert result["status"] == "ok"
        assert result["action"] == "added"
        assert mcp_env["engine"].get(result["id"]).category == "preference"

    def test_dedup(self, mcp_env):
        first = call(mcp_env, "memory_add", content="Use pnpm")
        second = call(mcp_env, "memory_add", content="Use  pnpm")
        assert second["id"] == first["id"]
        assert second["action"] == "deduped"

    def test_validation_error(self, mcp_env):
        result = call(mcp_env, "memory_add", content="   ")
        assert result["status"] == "error"
        assert result["error"] == "validation_error"

    def test_empty_category_rejected(self, mcp_env):
        result = call(mcp_env, "memory_add", content="Use pnpm", category="")
        assert result["error"] == "validation_error"
        assert mcp_env["engine"].stats()["total"] == 0

    def test_secret_rejected(self, mcp_env):
        result = call(mcp_env, "memory_add", content="token: sk-abcdefghijklmnop1234")
        assert result["error"] == "validation_error"
        assert mcp_env["engine"].stats()["total"] == 0

    def test_cwd_outside_rejected(self, mcp_env, tmp_path):
        result = call(mcp_env, "memory_add", content="Use pnpm", cwd=str(tmp_path))
        assert result["error"] == "path_violation"
        assert mcp_env["engine"].stats()["total"] == 0
        assert audit_records(mcp_env)[-1]["outcome"] == "rejected"

    def test_cwd_inside_accepted(self, mcp_env):
        result = call(mcp_env, "memory_add", content="Use pnpm",
                      cwd=str(mcp_env["workspace"]))
        assert result["status"] == "ok"


class TestMemoryList:
    def test_paging(self, mcp_env):
        for i in range(3):
            call(mcp_env, "memory_add", content=f"fact number {i}")
        page = call(mcp_env, "memory_list", limit=2)
        assert page["status"] == "ok"
        assert len(page["entries"]) == 2
        assert page["total"] == 3
        rest = call(mcp_env, "memory_list", limit=2, cursor=page["next_cursor"])
        assert len(rest["entries"]) == 1
        assert rest["next_cursor"] is None
        seen = {e["id"] for e in page["entries"] + rest["entries"]}
        assert len(seen) == 3

    def test_bad_cursor(self, mcp_env):
        result = call(mcp_env, "memory_list", cursor="bm9wZQ==")
        assert result["error"] == "validation_error"

    def test_bad_category(self, mcp_env):
        result = call(mcp_env, "memory_list", category="9bad")
        assert result["error"] == "validation_error"


class TestMemorySearch:
    def test_empty(self, mcp_env):
        result = call(mcp_env, "memory_search", query="anything")
        assert result == {"status": "ok", "count": 0, "results": []}

    def test_hit(self, mcp_env):
        call(mcp_env, "memory_add", content="Use pnpm for installs")
        result = call(mcp_env, "memory_search", query="pnpm installs")
        assert result["count"] == 1
        assert result["results"][0]["score"] == 1.0


class TestMemoryDeleteAndPin:
    def test_pin_then_delete(self, mcp_env):
        entry_id = call(mcp_env, "memory_add", content="Use pnpm")["id"]
        pinned = call(mcp_env, "memory_pin", id=entry_id[:8])
        assert pinned["entry"]["pinned"] is True
        unpinned = call(mcp_env, "memory_pin", id=entry_id, pinned=False)
        assert unpinned["entry"]["pinned"] is False
        assert call(mcp_env, "memory_delete", id=entry_id) == {"status": "ok", "id": entry_id}

    def test_not_found(self, mcp_env):
        result = call(mcp_env, "memory_delete", id="ffff")
        assert result["error"] == "not_found"
        assert audit_records(mcp_env)[-1]["outcome"] == "error"


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


class TestCapture:
    def test_auto_toggle(self, mcp_env):
        assert call(mcp_env, "memory_auto")["enabled"] is True
        result = call(mcp_env, "memory_auto", mode="off")
        assert result == {"status": "ok", "enabled": False, "changed": True}

    def test_auto_bad_mode(self, mcp_env):
        assert call(mcp_env, "memory_auto", mode="sometimes")["error"] == "validation_error"

    def test_candidates_not_stored(self, mcp_env):
        result = call(mcp_env, "memory_capture_candidates",
                      transcript="user: Remember that we deploy with make release.")
        [c] = result["candidates"]
        assert c["raw_text"] == "we deploy with make release"
        assert c["state"] == "pending"
        assert mcp_env["engine"].stats()["total"] == 0

    def test_candidates_persisted(self, mcp_env):
        result = call(mcp_env, "memory_capture_candidates",
                      transcript="user: Remember that we deploy with make release.",
                      persist=True)
        [c] = result["candidates"]
        assert c["state"] == "accepted"
        assert mcp_env["engine"].get(c["entry_id"]).origin == "captured"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_stats_relative_db(self, mcp_env):
        result = call(mcp_env, "memory_stats")
        assert result["status"] == "ok"
        assert result["db_path"] == ".agentmem/memory.sqlite"

    def test_refresh(self, mcp_env):
        call(mcp_env, "memory_add", content="run the unit tests with pytest", category="workflow")
        call(mcp_env, "memory_add", content="run the unit tests with pytest always",
             category="workflow")
        result = call(mcp_env, "memory_refresh")
        assert result["status"] == "ok"
        assert len(result["compaction"]["removed_ids"]) == 1
        assert result["applied"]["deleted"] == 1

    def test_sync_agents(self, mcp_env):
        call(mcp_env, "memory_add", content="Use pnpm")
        result = call(mcp_env, "memory_sync_agents")
        assert result["status"] == "ok"
        assert result["path"] == "AGENTS.md"
        assert result["action"] == "inserted"
        text = (mcp_env["workspace"] / "AGENTS.md").read_text(encoding="utf-8")
        assert START_MARKER in text

    def test_sync_agents_marker_conflict(self, mcp_env):
        (mcp_env["workspace"] / "AGENTS.md").write_text(f"{START_MARKER}\n", encoding="utf-8")
        result = call(mcp_env, "memory_sync_agents")
        assert result["error"] == "sync_marker_conflict"

    def test_sync_agents_escape(self, mcp_env):
        result = call(mcp_env, "memory_sync_agents", path="/etc/AGENTS.md")
        assert result["error"] == "path_violation"

    def test_export(self, mcp_env):
        call(mcp_env, "memory_add", content="Use pnpm")
        result = call(mcp_env, "memory_export", format="md", path="mem.md")
        assert result == {"status": "ok", "path": "mem.md", "format": "md", "count": 1}

    def test_export_bad_format(self, mcp_env):
        result = call(mcp_env, "memory_export", format="xml")
        assert result["error"] == "validation_error"


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------


class TestMemoryCommand:
    def test_add(self, mcp_env):
        result = call(mcp_env, "memory_command", command="/memory add --category fact CI is green")
        assert result["status"] == "ok"
        assert result["command"] == "add"
        assert result["message"].startswith("Saved memory")

    def test_show_preview(self, mcp_env):
        call(mcp_env, "memory_add", content="Use pnpm", category="workflow")
        result = call(mcp_env, "memory_command", command="/memory show")
        assert result["command"] == "show"
        assert result["data"]["candidate_count"] == 1
        assert "- [workflow] Use pnpm" in result["message"]
        assert not (mcp_env["workspace"] / "AGENTS.md").exists()

    def test_parse_error(self, mcp_env):
        result = call(mcp_env, "memory_command", command="/memory list --limit ten")
        assert result["error"] == "parse_error"
        assert result["token"] == "ten"
        assert result["position"] == len("/memory list --limit ")


# ---------------------------------------------------------------------------
# Errors and audit
# ---------------------------------------------------------------------------


class TestErrors:
    def test_error_kinds(self):
        assert error_kind(NotFound("x")) == "not_found"
        assert error_kind(PathViolation("../x", "/ws")) == "path_violation"
        assert error_kind(StorageIOError("disk")) == "storage_io_error"
        assert error_kind(CompactionProviderError("down")) == "compaction_provider_error"
        assert error_kind(RuntimeError("boom")) == "internal_error"

    def test_ambiguous_matches(self):
        response = error_response(AmbiguousId("ab", ["ab1", "ab2"]))
        assert response["error"] == "ambiguous_id"
        assert response["matches"] == ["ab1", "ab2"]


class TestAudit:
    def test_one_record_per_call(self, mcp_env):
        call(mcp_env, "memory_add", content="Use pnpm")
        call(mcp_env, "memory_stats")
        records = audit_records(mcp_env)
        assert [r["tool"] for r in records] == ["memory_add", "memory_stats"]
        assert all(r["db"] == ".agentmem/memory.sqlite" for r in records)
        assert len({r["rid"] for r in records}) == 2

    def test_content_never_logged(self, mcp_env):
        call(mcp_env, "memory_add", content="Deploys go through the blue pipeline")
        raw = mcp_env["audit"].getvalue()
        assert "blue pipeline" not in raw
        assert json.loads(raw.splitlines()[0])["d"]["action"] == "added"
