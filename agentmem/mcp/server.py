"""
agentmem MCP Server — Durable memory for a coding agent

Standalone MCP server exposing MemoryEngine operations via the Model
Context Protocol (stdio transport).

Architecture: thin MCP layer delegating to agentmem.engine.MemoryEngine.
No business logic in this module.

Usage:
    agentmem-mcp --workspace /path/to/project
    agentmem-mcp --workspace . --storage-root ~/.agentmem/project --audit-log audit.jsonl
    python -m agentmem.mcp.server --workspace .
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Durable memory for this workspace (12 tools).\n"
    "\n"
    "STORE:    memory_add for stable facts, preferences and conventions.\n"
    "FIND:     memory_search (keywords) and memory_list (browse).\n"
    "CURATE:   memory_pin protects a memory; memory_delete removes one;\n"
    "          memory_refresh compacts near-duplicates.\n"
    "CAPTURE:  memory_capture_candidates proposes memories from a transcript;\n"
    "          memory_auto toggles automatic capture.\n"
    "DOCUMENT: memory_sync_agents writes the managed block in AGENTS.md.\n"
    "COMMAND:  memory_command runs raw '/memory ...' text.\n"
    "\n"
    "Rules:\n"
    "- Store one durable fact per memory, not transient task state\n"
    "- NEVER store secrets, tokens or credentials (they are rejected)\n"
    "- Pass cwd so the server can check it is inside the workspace\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the memory MCP server."""
    p = argparse.ArgumentParser(
        prog="agentmem-mcp",
        description="agentmem MCP Server — durable memory for a coding agent",
    )
    p.add_argument(
        "--workspace",
        default=os.environ.get("AGENTMEM_WORKSPACE", "."),
        help="Workspace root (default: . or $AGENTMEM_WORKSPACE)",
    )
    p.add_argument(
        "--storage-root",
        default=os.environ.get("AGENTMEM_STORAGE"),
        help="Storage directory (default: <workspace>/.agentmem or $AGENTMEM_STORAGE)",
    )
    p.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: stderr)",
    )
    p.add_argument(
        "--log-level",
        default=os.environ.get("AGENTMEM_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO or $AGENTMEM_LOG_LEVEL)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Shortcut for --log-level DEBUG",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with memory tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, engine) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from agentmem.engine import MemoryEngine
    from agentmem.mcp.audit import AuditLogger
    from agentmem.mcp.tools import register_memory_tools

    if args is None:
        args = build_parser().parse_args()

    engine = MemoryEngine(args.workspace, args.storage_root)
    if engine.config_warning is not None:
        logger.warning("Config was invalid and has been reset: %s", engine.config_warning)

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output)

    mcp = FastMCP(
        name="agentmem Memory",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_memory_tools(mcp, engine, audit=audit)

    logger.info(
        "agentmem MCP server ready: workspace=%s storage=%s",
        engine.workspace, engine.storage_root,
    )
    return mcp, engine


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else getattr(logging, args.log_level)
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, engine = create_server(args)
    try:
        mcp.run()
    finally:
        engine.close()


if __name__ == "__main__":
    main()
