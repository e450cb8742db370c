"""
TripleSearch CLI — Command-Line Interface
=========================================

Command-line interface for TripleSearch operations.

Usage:
    triplesearch health
    triplesearch index --type document --groups '[{"name": "public", "variables": []}]'
    triplesearch search documents --filter title=giraffes --groups '[...]'
    triplesearch invalidate --type document
    triplesearch remove --type document --groups '[...]'
    triplesearch delta deltas.json
    triplesearch run < deltas.jsonl
"""

import argparse
import json
import sys
from typing import List, Optional

from .authorization import parse_authorization_groups
from .config import DEFAULT_CONFIG_PATH
from .exceptions import TripleSearchError
from .log import configure_logging


def get_groups(value: Optional[str]):
    """Parse a JSON array of authorization groups, None when absent."""
    try:
        return parse_authorization_groups(value)
    except ValueError as e:
        raise SystemExit(f"Invalid authorization groups {value!r}: {e}")


def get_pairs(values: Optional[List[str]]) -> dict:
    """Turn key=value arguments into a dict."""
    pairs = {}
    for value in values or []:
        key, sep, val = value.partition("=")
        if not sep:
            raise SystemExit(f"Expected key=value, got {value!r}")
        pairs[key] = val
    return pairs


def create_app(args):
    from .app import TripleSearch

    return TripleSearch.from_config_file(args.config)


def print_indexes(indexes):
    print(f"\n{'Index':<34} {'Type':<20} {'Status':<9} Allowed groups")
    print("-" * 90)
    for index in indexes:
        groups = json.dumps(index.allowed_groups)
        print(f"{index.name:<34} {index.type_name:<20} {index.status.value:<9} {groups}")


def cmd_health(args):
    """Show the availability of the backing services."""
    with create_app(args) as app:
        health = app.search.health()
    for service, up in health.items():
        print(f"{service}: {'up' if up else 'down'}")
    return 0 if health["healthy"] else 1


def cmd_index(args):
    """(Re)build indexes."""
    with create_app(args) as app:
        if app.configuration.persist_indexes:
            app.index_manager.load_persisted()
        indexes = app.search.update_indexes(args.type, get_groups(args.groups), get_groups(args.used_groups))
        print_indexes(indexes)
    return 0


def cmd_search(args):
    """Search the documents of a type."""
    params = {
        "filter": get_pairs(args.filter),
        "sort": get_pairs(args.sort),
        "page": {"number": args.page_number, "size": args.page_size},
        "collapse_uuids": not args.no_collapse
    }
    if args.highlight:
        params["highlight"] = {":fields:": args.highlight}

    with create_app(args) as app:
        if app.configuration.persist_indexes:
            app.index_manager.load_persisted()
        results = app.search.search(
            args.path, params, get_groups(args.groups) or [], get_groups(args.used_groups)
        )
    print(json.dumps(results, indent=2))
    return 0


def cmd_invalidate(args):
    """Mark indexes invalid."""
    with create_app(args) as app:
        app.index_manager.load_persisted()
        indexes = app.search.invalidate_indexes(args.type, get_groups(args.groups))
        print_indexes(indexes)
    return 0


def cmd_remove(args):
    """Remove indexes."""
    if not args.force:
        confirm = input("Remove matching indexes? [y/N] ")
        if confirm.lower() != "y":
            print("Aborted.")
            return 1

    with create_app(args) as app:
        app.index_manager.load_persisted()
        indexes = app.search.remove_indexes(args.type, get_groups(args.groups))
        print_indexes(indexes)
    return 0


def cmd_delta(args):
    """Queue the changes caused by a file of deltas."""
    if args.file == "-":
        deltas = json.load(sys.stdin)
    else:
        with open(args.file, "r", encoding="utf-8") as f:
            deltas = json.load(f)

    with create_app(args) as app:
        updates, deletes = app.delta_handler.route(deltas)
    print(f"Queued {updates} updates and {deletes} deletes")
    return 0


def cmd_run(args):
    """Run the update pipeline, reading one delta batch per line from stdin."""
    with create_app(args) as app:
        if not app.wait_for_services(timeout=args.wait):
            print("Services did not come up in time", file=sys.stderr)
            return 1
        app.start()
        try:
            for line in sys.stdin:
                line = line.strip()
                if not line:
                    continue
                try:
                    app.delta_handler.route(json.loads(line))
                except (ValueError, TripleSearchError) as e:
                    print(f"Error: {e}", file=sys.stderr)
        except KeyboardInterrupt:
            print("\nExiting...")
    return 0


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="triplesearch",
        description="TripleSearch — authorization-aware Elasticsearch indexes for RDF data"
    )

    # Global options
    parser.add_argument(
        "--config",
        help=f"Configuration file (default: {DEFAULT_CONFIG_PATH})",
        default=DEFAULT_CONFIG_PATH
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        help="Log level (default: LOG_LEVEL or INFO)",
        default=None
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("health", help="Check Elasticsearch and the triplestore")

    def add_selection(sub, type_help):
        sub.add_argument("--type", help=type_help)
        sub.add_argument("--groups", help="Allowed groups as JSON array (default: all)")

    # index command
    index_parser = subparsers.add_parser("index", help="Build or rebuild indexes")
    add_selection(index_parser, "Type to index (default: all types)")
    index_parser.add_argument("--used-groups", dest="used_groups", help="Used groups as JSON array")

    # search command
    search_parser = subparsers.add_parser("search", help="Search documents")
    search_parser.add_argument("path", help="Path the type is exposed on")
    search_parser.add_argument("--filter", action="append", help="Filter as key=value, repeatable")
    search_parser.add_argument("--sort", action="append", help="Sort as field=asc|desc, repeatable")
    search_parser.add_argument("--highlight", help="Comma-separated fields to highlight")
    search_parser.add_argument("--page-number", dest="page_number", type=int, default=0, help="Page number")
    search_parser.add_argument("--page-size", dest="page_size", type=int, default=10, help="Page size")
    search_parser.add_argument("--no-collapse", dest="no_collapse", action="store_true",
                               help="Don't collapse results on uuid")
    search_parser.add_argument("--groups", help="Allowed groups as JSON array")
    search_parser.add_argument("--used-groups", dest="used_groups", help="Used groups as JSON array")

    # invalidate command
    invalidate_parser = subparsers.add_parser("invalidate", help="Mark indexes invalid")
    add_selection(invalidate_parser, "Type to invalidate (default: all types)")

    # remove command
    remove_parser = subparsers.add_parser("remove", help="Remove indexes")
    add_selection(remove_parser, "Type to remove (default: all types)")
    remove_parser.add_argument("-f", "--force", action="store_true", help="Skip confirmation")

    # delta command
    delta_parser = subparsers.add_parser("delta", help="Queue changes from a delta file")
    delta_parser.add_argument("file", help="JSON file with deltas, - for stdin")

    # run command
    run_parser = subparsers.add_parser("run", help="Run the update pipeline on deltas from stdin")
    run_parser.add_argument("--wait", type=float, default=300.0, help="Seconds to wait for services")

    # Parse and dispatch
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    commands = {
        "health": cmd_health,
        "index": cmd_index,
        "search": cmd_search,
        "invalidate": cmd_invalidate,
        "remove": cmd_remove,
        "delta": cmd_delta,
        "run": cmd_run,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 2

    try:
        return command(args)
    except TripleSearchError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
