"""
scratchpad MCP Server — buffer commands over the Model Context Protocol

Thin MCP layer delegating to BufferRepository; no business logic here.
On start a rotating backup is written when one is due.

Usage:
    python -m scratchpad.mcp.server --db /path/to/scratchpad.db
    python -m scratchpad.mcp.server --config ~/.config/scratchpad/config.json
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, shown to every MCP client.
_MCP_INSTRUCTIONS = (
    "Local scratchpad of freeform text buffers (11 tools).\n"
    "\n"
    "LIST:   get_sidebar_data pages through buffers, pinned first.\n"
    "READ:   get_buffer_content returns one buffer's text.\n"
    "WRITE:  create_buffer, then save_buffer with the full new text.\n"
    "FIND:   search_buffers takes plain words (letters, digits, hyphens).\n"
    "ORDER:  toggle_pin, reorder_buffers (unpinned ids, first to last).\n"
    "TIDY:   archive_buffer, delete_buffer, cleanup_empty_buffers.\n"
    "\n"
    "Errors come back as status=error with kind not_found | storage |\n"
    "validation | corruption; refresh the list after not_found.\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the scratchpad MCP server."""
    p = argparse.ArgumentParser(
        prog="scratchpad-mcp",
        description="scratchpad MCP Server — durable, searchable text buffers",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("SCRATCHPAD_DB"),
        help="SQLite database path (default: $SCRATCHPAD_DB or per-user data dir)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("SCRATCHPAD_CONFIG"),
        help="JSON config file (default: $SCRATCHPAD_CONFIG)",
    )
    p.add_argument(
        "--no-backup",
        action="store_false",
        dest="backup",
        default=True,
        help="Skip the startup backup",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with buffer tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from scratchpad.backup import backup_manager_from_config
    from scratchpad.config import load_config
    from scratchpad.mcp.tools import register_buffer_tools
    from scratchpad.repository import BufferRepository
    from scratchpad.store import open_store

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config)
    if args.db:
        config.store.db_path = args.db

    store = open_store(config.store)
    repository = BufferRepository.from_config(store, config)

    if args.backup and config.backup.enabled:
        backup_manager_from_config(store, config).backup_if_due()

    mcp = FastMCP(
        name="scratchpad",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_buffer_tools(mcp, repository)

    logger.info(
        "scratchpad MCP server ready: db=%s, journal=%s",
        config.store.db_path, store.journal_mode,
    )
    return mcp, store


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _store = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
