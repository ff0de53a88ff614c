"""
scratchpad CLI — buffer commands over the local store

Commands:
    scratchpad init    [--recover]             — create (or repair) the database
    scratchpad new     [CONTENT|-]             — create a buffer, print its id
    scratchpad save    ID [CONTENT|-]          — replace a buffer's content
    scratchpad show    ID                      — print a buffer's content
    scratchpad list    [--offset N] [--limit N] [--archived]
    scratchpad search  "terms" [-k N]          — ranked prefix search
    scratchpad delete  ID                      — delete, print next active id
    scratchpad pin     ID                      — toggle pin state
    scratchpad reorder ID [ID ...]             — set manual order of unpinned buffers
    scratchpad move    ID up|down              — swap with neighbor
    scratchpad archive ID / restore ID
    scratchpad cleanup [--active ID]           — delete blank buffers
    scratchpad stats                           — counts and storage facts
    scratchpad check   [--vacuum] [--rebuild]  — integrity check and maintenance
    scratchpad backup  [--dir D] [--if-due]    — rotating snapshot
    scratchpad serve                           — start MCP server (foreground)

Environment variables:
    SCRATCHPAD_DB       Path to SQLite database
                        (default: $XDG_DATA_HOME/scratchpad/scratchpad.db)
    SCRATCHPAD_CONFIG   Path to a JSON config file

Precedence (invariant):
    CLI --flag  >  SCRATCHPAD_* env var  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (unknown buffer id, invalid query or input)
    2  Internal failure (storage, corruption, unexpected exception)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

from scratchpad.errors import (
    CorruptionError,
    NotFoundError,
    SchemaVersionError,
    ScratchpadError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    """Parse string env var with fallback."""
    return os.environ.get(name) or default


def _resolve_config(args: Optional[argparse.Namespace] = None):
    """Resolve config: CLI --config > SCRATCHPAD_CONFIG > compiled defaults."""
    from scratchpad.config import load_config
    path = getattr(args, "config", None) if args else None
    return load_config(path or _env_str("SCRATCHPAD_CONFIG", None))


def _resolve_db(args: Optional[argparse.Namespace] = None, config=None) -> str:
    """Resolve database path: CLI --db > SCRATCHPAD_DB > config > default."""
    if args and getattr(args, "db", None):
        return args.db
    if config is not None:
        return _env_str("SCRATCHPAD_DB", config.store.db_path)
    from scratchpad.config import default_db_path
    return default_db_path()


# ---------------------------------------------------------------------------
# Store factory
# ---------------------------------------------------------------------------


def _open(args: argparse.Namespace) -> Tuple:
    """Open (store, repository, config).  Creates the DB and parent dirs if needed."""
    from scratchpad.repository import BufferRepository
    from scratchpad.store import open_store

    config = _resolve_config(args)
    config.store.db_path = _resolve_db(args, config)
    store = open_store(config.store)
    return store, BufferRepository.from_config(store, config), config


# ---------------------------------------------------------------------------
# Stderr / stdout helpers
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _emit_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _read_content(args: argparse.Namespace) -> str:
    """Content from the positional argument, --file, or stdin ('-' or absent)."""
    if getattr(args, "file", None):
        return Path(args.file).read_text(encoding="utf-8")
    content = getattr(args, "content", None)
    if content is not None and content != "-":
        return content
    if content is None and sys.stdin.isatty():
        return ""
    return sys.stdin.read()


def _fmt_time(epoch: int) -> str:
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M")


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Create the database (idempotent); --recover quarantines an unreadable file."""
    from scratchpad.store import open_store, quarantine_database

    config = _resolve_config(args)
    config.store.db_path = _resolve_db(args, config)
    db_path = config.store.db_path

    try:
        store = open_store(config.store)
    except SchemaVersionError as e:
        _warn(f"Database schema not supported: {e}")
        _warn("Upgrade scratchpad to open it; the file was left untouched.")
        sys.exit(2)
    except CorruptionError as e:
        if not args.recover:
            _warn(f"Database unreadable: {e}")
            _warn("Run 'scratchpad init --recover' to move it aside and start fresh.")
            sys.exit(2)
        moved = quarantine_database(db_path)
        _info(f"Moved unreadable database to {moved}")
        store = open_store(config.store)

    with store:
        version = store.schema_version()
        mode = store.journal_mode
    _info(f"Scratchpad database ready: {db_path}")
    _info(f"  Schema:   v{version}")
    _info(f"  Journal:  {mode}")
    print(f'export SCRATCHPAD_DB="{db_path}"')


# ===========================================================================
# Buffer commands
# ===========================================================================


def cmd_new(args: argparse.Namespace) -> None:
    """Create a buffer and print its id."""
    store, repo, _ = _open(args)
    with store:
        summary = repo.create(_read_content(args))
    if getattr(args, "json", False):
        _emit_json(summary.to_dict())
    else:
        print(summary.id)


def cmd_save(args: argparse.Namespace) -> None:
    """Replace a buffer's content."""
    store, repo, _ = _open(args)
    with store:
        title, preview = repo.save(args.id, _read_content(args))
    if getattr(args, "json", False):
        _emit_json({"status": "ok", "id": args.id, "title": title, "preview": preview})
    else:
        _info(f"Saved {args.id}: {title}")


def cmd_show(args: argparse.Namespace) -> None:
    """Print a buffer's content (--json: the full row)."""
    store, repo, _ = _open(args)
    with store:
        content = repo.get_content(args.id)
        buf = repo.get(args.id) if getattr(args, "json", False) else None
    if buf is not None:
        _emit_json(buf.to_dict())
    else:
        sys.stdout.write(content)
        if content and not content.endswith("\n"):
            sys.stdout.write("\n")


def cmd_list(args: argparse.Namespace) -> None:
    """List buffers in display order (pinned first)."""
    store, repo, _ = _open(args)
    with store:
        if args.archived:
            rows = repo.list_archived()
        else:
            rows = repo.list_page(args.offset, args.limit)

    if getattr(args, "json", False):
        _emit_json([s.to_dict() for s in rows])
        return
    if not rows:
        _info("No buffers.")
        return
    for s in rows:
        pin = "*" if s.is_pinned else " "
        print(f"{pin} {s.id}  {_fmt_time(s.updated_at)}  {s.title}")
        if s.preview:
            print(f"    {s.preview}")


def cmd_search(args: argparse.Namespace) -> None:
    """Ranked full-text search."""
    store, repo, _ = _open(args)
    with store:
        results = repo.search(args.query, limit=args.k)

    if getattr(args, "json", False):
        _emit_json([r.to_dict() for r in results])
        return
    if not results:
        _info("No results found.")
        return
    print(f"Found {len(results)} buffer(s):\n")
    for r in results:
        print(f"  {r.id}  {_fmt_time(r.updated_at)}")
        print(f"    {r.snippet}")


def cmd_delete(args: argparse.Namespace) -> None:
    """Delete a buffer; print the id that should become active next."""
    store, repo, _ = _open(args)
    with store:
        next_id = repo.delete(args.id)
    if getattr(args, "json", False):
        _emit_json({"status": "ok", "deleted": args.id, "next_active_id": next_id})
    else:
        _info(f"Deleted {args.id}")
        if next_id:
            print(next_id)


def cmd_pin(args: argparse.Namespace) -> None:
    """Toggle pin state."""
    store, repo, _ = _open(args)
    with store:
        pinned = repo.toggle_pin(args.id)
    if getattr(args, "json", False):
        _emit_json({"status": "ok", "id": args.id, "is_pinned": pinned})
    else:
        print("pinned" if pinned else "unpinned")


def cmd_reorder(args: argparse.Namespace) -> None:
    """Set the manual order of unpinned buffers."""
    store, repo, _ = _open(args)
    with store:
        order = repo.reorder(args.ids)
    if getattr(args, "json", False):
        _emit_json({"status": "ok", "order": order})
    else:
        _info(f"Reordered {len(order)} buffer(s)")


def cmd_move(args: argparse.Namespace) -> None:
    """Swap a buffer with its unpinned neighbor."""
    store, repo, _ = _open(args)
    with store:
        moved = repo.move_up(args.id) if args.direction == "up" else repo.move_down(args.id)
    if getattr(args, "json", False):
        _emit_json({"status": "ok", "moved": moved})
    elif not moved:
        _info(f"Cannot move {args.id} {args.direction}")


def cmd_archive(args: argparse.Namespace) -> None:
    """Hide a buffer without deleting it."""
    store, repo, _ = _open(args)
    with store:
        repo.archive(args.id)
    _info(f"Archived {args.id}")


def cmd_restore(args: argparse.Namespace) -> None:
    """Bring an archived buffer back."""
    store, repo, _ = _open(args)
    with store:
        repo.restore(args.id)
    _info(f"Restored {args.id}")


def cmd_cleanup(args: argparse.Namespace) -> None:
    """Delete blank, unpinned buffers (sparing --active)."""
    store, repo, _ = _open(args)
    with store:
        removed = repo.cleanup_empty(args.active)
    if getattr(args, "json", False):
        _emit_json({"status": "ok", "removed": removed})
    else:
        print(removed)


# ===========================================================================
# Maintenance commands
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show store statistics."""
    store, repo, _ = _open(args)
    with store:
        stats = repo.stats()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        _emit_json(stats)
    else:
        print("Scratchpad Statistics")
        print("=" * 40)
        print(f"  Buffers:   {stats['buffers']}")
        print(f"  Pinned:    {stats['pinned']}")
        print(f"  Archived:  {stats['archived']}")
        print(f"  Schema:    v{stats['schema_version']}")
        print(f"  Journal:   {stats['journal_mode']}")
        print(f"  Size:      {stats['db_size_bytes']} bytes")
        print(f"  Database:  {stats['db_path']}")


def cmd_check(args: argparse.Namespace) -> None:
    """Integrity check, with optional index rebuild and vacuum."""
    store, _, _ = _open(args)
    with store:
        ok = store.check_integrity()
        indexed = store.rebuild_search_index() if args.rebuild else None
        if args.vacuum:
            store.vacuum()

    if getattr(args, "json", False):
        _emit_json({"status": "ok" if ok else "error", "integrity": ok, "indexed": indexed})
    else:
        print("ok" if ok else "integrity check FAILED")
        if indexed is not None:
            _info(f"Search index rebuilt: {indexed} buffer(s)")
    if not ok:
        sys.exit(2)


def cmd_backup(args: argparse.Namespace) -> None:
    """Write a rotating snapshot."""
    from scratchpad.backup import backup_manager_from_config

    store, _, config = _open(args)
    with store:
        manager = backup_manager_from_config(store, config)
        if args.dir:
            manager.backup_dir = Path(args.dir)
        path = manager.backup_if_due() if args.if_due else manager.create_backup()

    if getattr(args, "json", False):
        _emit_json({"status": "ok", "path": str(path) if path else None})
    elif path is None:
        _info("Backup not due.")
    else:
        print(path)


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the scratchpad MCP server in foreground."""
    try:
        from scratchpad.mcp.server import create_server, build_parser as mcp_parser
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install scratchpad[mcp]")
        sys.exit(1)

    server_argv = ["--db", _resolve_db(args, _resolve_config(args))]
    if getattr(args, "config", None):
        server_argv.extend(["--config", args.config])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")
    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, _ = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install scratchpad[mcp]")
        sys.exit(1)

    _info(f"scratchpad MCP server (db={server_args.db})")
    _info("Press Ctrl+C to stop.")
    mcp.run()


# ===========================================================================
# Entry point
# ===========================================================================


def _add_content_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "content", nargs="?", default=None,
        help="Buffer text ('-' or omitted: read stdin)",
    )
    p.add_argument("--file", default=None, help="Read buffer text from a file")


def main() -> None:
    """CLI entry point: scratchpad <command> [args]."""
    global _quiet

    # SUPPRESS defaults keep subparser defaults from overriding values
    # parsed at the main-parser level (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help="Path to SQLite database (default: $SCRATCHPAD_DB or per-user data dir)",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="Path to JSON config file (default: $SCRATCHPAD_CONFIG)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="scratchpad",
        description="scratchpad — durable, searchable, orderable text buffers",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p = sub.add_parser("init", parents=[_common], help="Create the database")
    p.add_argument(
        "--recover", action="store_true",
        help="Move an unreadable database aside and create a fresh one",
    )
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("new", parents=[_common], help="Create a buffer")
    _add_content_arguments(p)
    p.set_defaults(func=cmd_new)

    p = sub.add_parser("save", parents=[_common], help="Replace a buffer's content")
    p.add_argument("id", help="Buffer ID")
    _add_content_arguments(p)
    p.set_defaults(func=cmd_save)

    p = sub.add_parser("show", parents=[_common], help="Print a buffer's content")
    p.add_argument("id", help="Buffer ID")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("list", parents=[_common], help="List buffers (pinned first)")
    p.add_argument("--offset", type=int, default=0, help="Skip N buffers (default: 0)")
    p.add_argument("--limit", type=int, default=None, help="Page size (default: 100)")
    p.add_argument("--archived", action="store_true", help="List archived buffers instead")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("search", parents=[_common], help="Full-text search (FTS5)")
    p.add_argument("query", help="Search terms (letters, digits, hyphens)")
    p.add_argument("-k", type=int, default=None, help="Max results (default: 20)")
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("delete", parents=[_common], help="Delete a buffer")
    p.add_argument("id", help="Buffer ID")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("pin", parents=[_common], help="Toggle pin state")
    p.add_argument("id", help="Buffer ID")
    p.set_defaults(func=cmd_pin)

    p = sub.add_parser("reorder", parents=[_common], help="Set manual order")
    p.add_argument("ids", nargs="+", help="Unpinned buffer IDs, first to last")
    p.set_defaults(func=cmd_reorder)

    p = sub.add_parser("move", parents=[_common], help="Move a buffer up or down")
    p.add_argument("id", help="Buffer ID")
    p.add_argument("direction", choices=("up", "down"))
    p.set_defaults(func=cmd_move)

    p = sub.add_parser("archive", parents=[_common], help="Archive a buffer")
    p.add_argument("id", help="Buffer ID")
    p.set_defaults(func=cmd_archive)

    p = sub.add_parser("restore", parents=[_common], help="Restore an archived buffer")
    p.add_argument("id", help="Buffer ID")
    p.set_defaults(func=cmd_restore)

    p = sub.add_parser("cleanup", parents=[_common], help="Delete blank buffers")
    p.add_argument("--active", default=None, help="Buffer ID to spare")
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("check", parents=[_common], help="Integrity check and maintenance")
    p.add_argument("--rebuild", action="store_true", help="Rebuild the search index")
    p.add_argument("--vacuum", action="store_true", help="Reclaim free space")
    p.set_defaults(func=cmd_check)

    p = sub.add_parser("backup", parents=[_common], help="Write a rotating snapshot")
    p.add_argument("--dir", default=None, help="Backup directory (default: <data dir>/backups)")
    p.add_argument("--if-due", action="store_true", help="Only if the newest snapshot is older than the interval")
    p.set_defaults(func=cmd_backup)

    p = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p.set_defaults(func=cmd_serve)

    # -- Parse and dispatch ------------------------------------------------
    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        # e.g. scratchpad list | head
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except (NotFoundError, ValidationError) as e:
        _warn(str(e))
        sys.exit(1)
    except ScratchpadError as e:
        _warn(f"{e.kind.capitalize()} error: {e}")
        sys.exit(2)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
