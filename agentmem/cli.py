"""
agentmem CLI — Memory commands for a workspace

Commands:
    agentmem add "text" [--category C] [--pin]     — store a memory
    agentmem list [--limit N] [--cursor C]         — pinned first, newest first
    agentmem search "query" [--limit N]            — token-overlap ranking
    agentmem delete <id>                           — permanent delete
    agentmem pin <id> [on|off]                     — protect from compaction
    agentmem auto [on|off|status]                  — heuristic auto-capture
    agentmem stats                                 — store metrics
    agentmem export [--format json|md] [PATH]      — export under the workspace
    agentmem refresh                               — compaction + maintenance
    agentmem sync [PATH]                           — managed block in AGENTS.md
    agentmem show                                  — preview the managed block
    agentmem capture [TEXT|-] [--persist]          — propose memories from a transcript
    agentmem command "/memory ..."                 — run a raw memory command

Environment variables:
    AGENTMEM_WORKSPACE  Workspace root (default: current directory)
    AGENTMEM_STORAGE    Storage directory (default: <workspace>/.agentmem)

Precedence (invariant):
    CLI --flag  >  AGENTMEM_* env var  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, not found, rejected path or content)
    2  Internal failure (unexpected exception, storage I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, List, Optional

from agentmem.commands import decode_cursor
from agentmem.engine import MemoryEngine
from agentmem.formatting import (
    format_auto_status,
    format_candidates,
    format_compaction,
    format_rows,
    format_search_results,
    format_stats,
)
from agentmem.store import StorageIOError
from agentmem.types import AgentMemError, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _emit_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _open_engine(args: argparse.Namespace) -> MemoryEngine:
    """Build an engine from --workspace/--storage-root (or their env vars)."""
    workspace = getattr(args, "workspace", None) or os.environ.get("AGENTMEM_WORKSPACE") or "."
    storage = getattr(args, "storage_root", None) or os.environ.get("AGENTMEM_STORAGE") or None
    engine = MemoryEngine(workspace, storage)
    if engine.config_warning is not None:
        _warn(f"agentmem: warning: {engine.config_warning}")
    return engine


def _wants_json(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "json", False))


# ===========================================================================
# Commands
# ===========================================================================


def cmd_add(args: argparse.Namespace) -> None:
    """Store one memory."""
    with _open_engine(args) as engine:
        result = engine.add(" ".join(args.content), args.category, pinned=args.pin)
    if _wants_json(args):
        _emit_json({"status": "ok", **result.to_dict()})
    elif result.action == "deduped":
        print(f"Already stored as {result.id}")
    else:
        print(result.id)


def cmd_list(args: argparse.Namespace) -> None:
    """List memories."""
    offset = args.offset
    if args.cursor:
        try:
            offset = decode_cursor(args.cursor)
        except ValueError as e:
            raise ValidationError(str(e)) from None
    with _open_engine(args) as engine:
        page = engine.list(
            category=args.category, limit=args.limit, offset=offset,
            include_archived=args.all,
        )
    if _wants_json(args):
        _emit_json({"status": "ok", **page.to_dict()})
    else:
        print(format_rows(page.entries, page.next_cursor))


def cmd_search(args: argparse.Namespace) -> None:
    """Search memories by token overlap."""
    query = " ".join(args.query)
    with _open_engine(args) as engine:
        hits = engine.search(query, limit=args.limit, category=args.category)
    if _wants_json(args):
        _emit_json({
            "status": "ok",
            "count": len(hits),
            "results": [dict(e.to_dict(), score=round(s, 4)) for e, s in hits],
        })
    else:
        print(format_search_results(hits, query))


def cmd_delete(args: argparse.Namespace) -> None:
    """Delete one memory."""
    with _open_engine(args) as engine:
        deleted = engine.delete(args.id)
    if _wants_json(args):
        _emit_json({"status": "ok", "id": deleted})
    else:
        _info(f"Deleted {deleted}")


def cmd_pin(args: argparse.Namespace) -> None:
    """Pin or unpin one memory."""
    with _open_engine(args) as engine:
        entry = engine.pin(args.id, args.value == "on")
    if _wants_json(args):
        _emit_json({"status": "ok", "entry": entry.to_dict()})
    else:
        _info(f"{'Pinned' if entry.pinned else 'Unpinned'} {entry.id}")


def cmd_auto(args: argparse.Namespace) -> None:
    """Show or toggle heuristic auto-capture."""
    with _open_engine(args) as engine:
        state = engine.auto(args.mode)
        text = format_auto_status(engine.config.capture)
    if _wants_json(args):
        _emit_json({"status": "ok", **state})
    else:
        print(text)


def cmd_stats(args: argparse.Namespace) -> None:
    """Show store statistics."""
    with _open_engine(args) as engine:
        stats = engine.stats()
    if _wants_json(args):
        _emit_json({"status": "ok", **stats})
    else:
        print(format_stats(stats))


def cmd_export(args: argparse.Namespace) -> None:
    """Export memories to a file under the workspace."""
    with _open_engine(args) as engine:
        info = engine.export(args.format, args.path)
    if _wants_json(args):
        _emit_json({"status": "ok", **info})
    else:
        _info(f"Exported {info['count']} memories")
        print(info["path"])


def cmd_refresh(args: argparse.Namespace) -> None:
    """Compact memories and run store maintenance."""
    with _open_engine(args) as engine:
        report = engine.refresh()
    if _wants_json(args):
        _emit_json({"status": "ok", **report.to_dict()})
    else:
        print(format_compaction(report.compaction, report.applied))


def cmd_sync(args: argparse.Namespace) -> None:
    """Write the managed block into AGENTS.md (or PATH)."""
    with _open_engine(args) as engine:
        result = engine.sync_agents(args.path)
    if _wants_json(args):
        _emit_json({"status": "ok", **result.to_dict()})
    else:
        print(f"{result.action}: {result.path} ({result.selected} entries)")


def cmd_show(args: argparse.Namespace) -> None:
    """Print the managed block sync would write, without writing it."""
    with _open_engine(args) as engine:
        preview = engine.preview()
    if _wants_json(args):
        _emit_json({"status": "ok", **preview})
    else:
        print(preview["block"])


def cmd_capture(args: argparse.Namespace) -> None:
    """Propose (and optionally store) memories from transcript text."""
    if not args.text or args.text == ["-"]:
        transcript = sys.stdin.read()
    else:
        transcript = " ".join(args.text)
    if not transcript.strip():
        _warn("agentmem: error: empty transcript")
        sys.exit(1)
    with _open_engine(args) as engine:
        candidates = engine.capture_candidates(transcript, persist=args.persist)
    if _wants_json(args):
        _emit_json({"status": "ok", "candidates": [c.to_dict() for c in candidates]})
    else:
        print(format_candidates(candidates))


def cmd_command(args: argparse.Namespace) -> None:
    """Run a raw '/memory ...' command."""
    raw = " ".join(args.raw)
    if not raw.lstrip().lstrip("/").lower().startswith("memory"):
        raw = f"/memory {raw}"
    with _open_engine(args) as engine:
        outcome = engine.execute(raw)
    if _wants_json(args):
        _emit_json({"status": "ok", **outcome.to_dict()})
    else:
        print(outcome.message)


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the agentmem argument parser."""
    # SUPPRESS defaults keep subparser defaults from overriding values parsed
    # at the main-parser level (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--workspace", default=argparse.SUPPRESS,
        help="Workspace root (default: $AGENTMEM_WORKSPACE or .)",
    )
    _common.add_argument(
        "--storage-root", default=argparse.SUPPRESS,
        help="Storage directory (default: $AGENTMEM_STORAGE or <workspace>/.agentmem)",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="agentmem",
        description="agentmem — durable memory for a coding agent",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- add ---------------------------------------------------------------
    p = sub.add_parser("add", parents=[_common], help="Store a memory")
    p.add_argument("content", nargs="+", help="Memory text")
    p.add_argument("--category", default=None, help="Category (default: other)")
    p.add_argument("--pin", action="store_true", help="Pin the new memory")
    p.set_defaults(func=cmd_add)

    # -- list --------------------------------------------------------------
    p = sub.add_parser("list", parents=[_common], help="List memories")
    p.add_argument("--category", default=None, help="Only this category")
    p.add_argument("--limit", type=int, default=None, help="Page size (default: 50)")
    p.add_argument("--offset", type=int, default=0, help="Skip this many entries")
    p.add_argument("--cursor", default=None, help="Cursor from a previous page")
    p.add_argument("--all", action="store_true", help="Include archived entries")
    p.set_defaults(func=cmd_list)

    # -- search ------------------------------------------------------------
    p = sub.add_parser("search", parents=[_common], help="Search memories")
    p.add_argument("query", nargs="+", help="Search words")
    p.add_argument("--limit", type=int, default=None, help="Max results (default: 20)")
    p.add_argument("--category", default=None, help="Only this category")
    p.set_defaults(func=cmd_search)

    # -- delete ------------------------------------------------------------
    p = sub.add_parser("delete", parents=[_common], help="Delete a memory")
    p.add_argument("id", help="Memory id or unique prefix")
    p.set_defaults(func=cmd_delete)

    # -- pin ---------------------------------------------------------------
    p = sub.add_parser("pin", parents=[_common], help="Pin or unpin a memory")
    p.add_argument("id", help="Memory id or unique prefix")
    p.add_argument("value", nargs="?", choices=["on", "off"], default="on")
    p.set_defaults(func=cmd_pin)

    # -- auto --------------------------------------------------------------
    p = sub.add_parser("auto", parents=[_common], help="Heuristic auto-capture")
    p.add_argument("mode", nargs="?", choices=["on", "off", "status"], default="status")
    p.set_defaults(func=cmd_auto)

    # -- stats -------------------------------------------------------------
    p = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p.set_defaults(func=cmd_stats)

    # -- export ------------------------------------------------------------
    p = sub.add_parser("export", parents=[_common], help="Export memories")
    p.add_argument("path", nargs="?", default=None, help="Output path under the workspace")
    p.add_argument("--format", choices=["json", "md"], default="json")
    p.set_defaults(func=cmd_export)

    # -- refresh -----------------------------------------------------------
    p = sub.add_parser("refresh", parents=[_common], help="Compact and maintain the store")
    p.set_defaults(func=cmd_refresh)

    # -- sync --------------------------------------------------------------
    p = sub.add_parser("sync", parents=[_common], help="Update the AGENTS.md managed block")
    p.add_argument("path", nargs="?", default=None, help="Document (default: AGENTS.md)")
    p.set_defaults(func=cmd_sync)

    # -- show --------------------------------------------------------------
    p = sub.add_parser("show", parents=[_common], help="Preview the AGENTS.md managed block")
    p.set_defaults(func=cmd_show)

    # -- capture -----------------------------------------------------------
    p = sub.add_parser("capture", parents=[_common], help="Propose memories from a transcript")
    p.add_argument("text", nargs="*", help="Transcript text ('-' or nothing reads stdin)")
    p.add_argument("--persist", action="store_true",
                   help="Store accepted candidates when auto-capture is on")
    p.set_defaults(func=cmd_capture)

    # -- command -----------------------------------------------------------
    p = sub.add_parser("command", parents=[_common], help="Run a raw '/memory ...' command")
    p.add_argument("raw", nargs=argparse.REMAINDER, help="Command text")
    p.set_defaults(func=cmd_command)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: agentmem <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        level = logging.DEBUG
    elif _quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(levelname)s %(message)s")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except StorageIOError as e:
        _warn(f"agentmem: storage error: {e}")
        sys.exit(2)
    except AgentMemError as e:
        _warn(f"agentmem: error: {e}")
        sys.exit(1)
    except BrokenPipeError:
        # e.g. agentmem list | head
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"agentmem: internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
