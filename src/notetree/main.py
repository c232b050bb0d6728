#!/usr/bin/env python
"""Command line interface for a notetree database."""
import argparse
import datetime
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from notetree import __version__
from notetree.config import config
from notetree.exceptions import NoteTreeError, ValidationError
from notetree.observability import configure_logging
from notetree.services.notetree_service import NoteTreeService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with one subcommand per operation."""
    parser = argparse.ArgumentParser(
        prog="notetree", description="Hierarchical block notes stored in SQLite"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTETREE_DATABASE_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTETREE_LOG_LEVEL", "WARNING"),
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for rotating log files",
        type=str,
        default=None,
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the database and print its statistics")

    add = sub.add_parser("add", help="Create a node")
    add.add_argument("content")
    add.add_argument("--parent", default=None, help="Parent node ID")
    add.add_argument("--order", type=int, default=None)
    add.add_argument("--tag", action="append", default=[], dest="tags")
    add.add_argument(
        "--property", action="append", default=[], dest="properties",
        metavar="KEY=VALUE", help="Property; VALUE is parsed as JSON when possible",
    )
    add.add_argument("--resync", action="store_true", help="Index [[links]] after creating")

    edit = sub.add_parser("edit", help="Update a node's content and/or tags")
    edit.add_argument("node_id")
    edit.add_argument("--content", default=None)
    edit.add_argument("--tag", action="append", default=None, dest="tags")
    edit.add_argument("--resync", action="store_true", help="Re-index [[links]] after editing")

    show = sub.add_parser("show", help="Show a node")
    show.add_argument("node_id")

    tree = sub.add_parser("tree", help="Show a node with its whole subtree")
    tree.add_argument("node_id")

    sub.add_parser("roots", help="List root nodes")

    move = sub.add_parser("move", help="Reparent and/or reorder a node")
    move.add_argument("node_id")
    move.add_argument("--parent", default=None, help="New parent ID (omit for root)")
    move.add_argument("--order", type=int, default=0)

    remove = sub.add_parser("delete", help="Delete a node and its subtree")
    remove.add_argument("node_id")

    resync = sub.add_parser("resync", help="Rebuild a node's outgoing links")
    resync.add_argument("node_id")

    backlinks = sub.add_parser("backlinks", help="List nodes linking to a node")
    backlinks.add_argument("node_id")
    backlinks.add_argument(
        "--outgoing", action="store_true", help="List the node's own targets instead"
    )

    mentions = sub.add_parser("mentions", help="List nodes mentioning some text")
    mentions.add_argument("node_id")
    mentions.add_argument("probe_text")

    daily = sub.add_parser("daily", help="Find or create a daily journal note")
    daily.add_argument("date", nargs="?", default=None, help="YYYY-MM-DD (default: today)")

    search = sub.add_parser("search", help="Full-text search over node content")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=20)

    return parser


def parse_properties(pairs: List[str]) -> Dict[str, Any]:
    """Parse KEY=VALUE pairs; values that are valid JSON are decoded."""
    properties: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValidationError(
                f"Invalid property '{pair}', expected KEY=VALUE", field="property", value=pair
            )
        try:
            properties[key] = json.loads(raw)
        except json.JSONDecodeError:
            properties[key] = raw
    return properties


def _dump(value: Any) -> Any:
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


def run_command(service: NoteTreeService, args: argparse.Namespace) -> Any:
    """Execute one parsed subcommand and return a JSON-serializable result."""
    command = args.command
    if command == "init":
        return service.stats()
    if command == "add":
        node = service.create_node(
            args.content,
            parent_id=args.parent,
            order=args.order,
            properties=parse_properties(args.properties),
            tags=args.tags,
        )
        if args.resync:
            service.resynchronize(node.id)
        return node
    if command == "edit":
        fields: Dict[str, Any] = {}
        if args.content is not None:
            fields["content"] = args.content
        if args.tags is not None:
            fields["tags"] = args.tags
        node = service.update_node(args.node_id, **fields)
        if args.resync:
            service.resynchronize(node.id)
        return node
    if command == "show":
        return service.get_node(args.node_id)
    if command == "tree":
        return service.get_tree(args.node_id)
    if command == "roots":
        return service.list_roots()
    if command == "move":
        return service.move_node(args.node_id, args.parent, args.order)
    if command == "delete":
        service.delete_node(args.node_id)
        return {"deleted": args.node_id}
    if command == "resync":
        service.resynchronize(args.node_id)
        return [edge.target_node_id for edge in service.edges_from(args.node_id)]
    if command == "backlinks":
        if args.outgoing:
            return service.outgoing(args.node_id)
        return service.backlinks(args.node_id)
    if command == "mentions":
        return service.unlinked_mentions(args.node_id, args.probe_text)
    if command == "daily":
        return service.daily_note(args.date or datetime.date.today())
    if command == "search":
        return service.search(args.query, args.limit)
    raise ValidationError(f"Unknown command: {command}", field="command", value=command)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the notetree command line."""
    args = build_parser().parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    log_dir = Path(args.log_dir) if args.log_dir else config.log_dir
    try:
        configure_logging(log_dir=log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")

    try:
        if args.database_path:
            service = NoteTreeService.open(args.database_path)
        else:
            service = NoteTreeService()
    except NoteTreeError as e:
        logger.error(f"Failed to open database: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1

    try:
        result = run_command(service, args)
    except NoteTreeError as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1
    finally:
        service.close()

    print(json.dumps(_dump(result), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
