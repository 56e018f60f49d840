"""Command-line interface for the Capacities Analytics pipeline.

Usage:
    python3 -m src.capacities.cli check
    python3 -m src.capacities.cli stats
    python3 -m src.capacities.cli stats --json
    python3 -m src.capacities.cli debug /spaces

The API token is prompted for (or passed with --token); it is never read
from config.yaml or the environment.
"""

from __future__ import annotations

import argparse
import getpass
import json
import sys
from src.capacities.client import CapacitiesClient
from src.capacities.errors import ClassifiedError, TokenFormatError
from src.common.config import load_config, setup_logging
from src.common.timefmt import format_countdown, format_relative


def _token(args: argparse.Namespace) -> str:
    return args.token or getpass.getpass("Capacities API token: ")


def _print_error(error: ClassifiedError) -> None:
    print(f"Error [{error.kind.value}]: {error.message}", file=sys.stderr)
    if error.detail:
        print(f"  {error.detail}", file=sys.stderr)
    print(f"\n{error.remediation}", file=sys.stderr)


def cmd_check(args: argparse.Namespace, client: CapacitiesClient) -> int:
    result = client.test_connection(_token(args))
    if not result.success or result.session is None:
        print(f"Connection failed: {result.message}")
        if result.error:
            _print_error(result.error)
        return 1
    now = client.clock()
    print(f"{result.message}.")
    print(f"Token {result.session.masked()} expires in {format_countdown(result.session.remaining(now))}")
    return 0


def cmd_stats(args: argparse.Namespace, client: CapacitiesClient) -> int:
    connection = client.test_connection(_token(args))
    if not connection.success or connection.session is None:
        print(f"Connection failed: {connection.message}")
        if connection.error:
            _print_error(connection.error)
        return 1

    result = client.sync(connection.session)
    if result.error is not None or result.stats is None:
        if result.error:
            _print_error(result.error)
        return 1

    stats = result.stats
    if args.json:
        print(json.dumps({"space": result.space, "stats": stats.to_dict()}, indent=2))
        return 0

    now = client.clock()
    title = (result.space or {}).get("title") or "(untitled space)"
    print(f"Space: {title}\n")
    print(f"  Notes              {stats.total_notes:,}")
    print(f"  Objects            {stats.total_objects:,}")
    print(f"  Created this week  {stats.created_this_week} ({stats.daily_average}/day)")
    print(f"  Orphaned notes     {len(stats.orphaned_notes)}")
    print(f"  Health score       {stats.health.overall}/100")

    if stats.top_tags:
        print("\nTop tags:")
        for tag in stats.top_tags:
            print(f"  #{tag.name:20s} {tag.count}")

    if stats.object_types:
        print("\nObject types:")
        for obj in stats.object_types:
            print(f"  {obj.name:20s} {obj.count:,}")

    if stats.recently_updated:
        print("\nRecently updated:")
        for note in stats.recently_updated:
            print(f"  {format_relative(note.updated_at, now):>10s}  {note.title}")
    return 0


def cmd_debug(args: argparse.Namespace, client: CapacitiesClient) -> int:
    try:
        result = client.raw_call(args.endpoint, _token(args))
    except TokenFormatError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(f"{result['endpoint']} -> {result['status']} via {result.get('proxy', '-')}")
    if result.get("error"):
        print(result["error"])
        return 1
    print(json.dumps(result.get("headers", {}), indent=2))
    print()
    print(result.get("data") or "")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(prog="capacities", description="Capacities knowledge-base analytics")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--token", type=str, default=None, help="API token (prompted if omitted)")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("check", help="Test a token against the API")

    p_stats = sub.add_parser("stats", help="Sync and print knowledge-base statistics")
    p_stats.add_argument("--json", action="store_true", help="Print the raw stats JSON")

    p_debug = sub.add_parser("debug", help="Raw GET of an API endpoint through the proxies")
    p_debug.add_argument("endpoint", help="Endpoint path, e.g. /spaces")

    args = parser.parse_args()
    cfg = load_config(args.config)
    setup_logging(cfg)
    client = CapacitiesClient(cfg)

    dispatch = {
        "check": cmd_check,
        "stats": cmd_stats,
        "debug": cmd_debug,
    }
    sys.exit(dispatch[args.command](args, client))


if __name__ == "__main__":
    main()
