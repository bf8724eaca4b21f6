"""Command-line interface for pgstage."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from pgstage.exceptions import ConfigError, PgstageError
from pgstage.neon.utils import build_config_and_validate, build_tools
from pgstage.tools import TOOL_DEFINITIONS, NeonTools, ToolResult


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="pgstage",
        description="Staged schema migrations for Neon Postgres",
    )
    parser.add_argument("--api-key", help="Neon API key (overrides NEON_API_KEY)")
    parser.add_argument("--profile", help="Profile to read from ~/.neoncfg")
    parser.add_argument(
        "--registry-path",
        help="File that tracks staged migrations (overrides PGSTAGE_REGISTRY_PATH)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("tools", help="List available tools")

    call_parser = subparsers.add_parser("call", help="Invoke a tool by name")
    call_parser.add_argument("name", help="Tool name")
    call_parser.add_argument(
        "--args",
        dest="arguments",
        default="{}",
        help="Tool arguments as a JSON object",
    )

    prepare_parser = subparsers.add_parser(
        "prepare", help="Stage a migration on a temporary branch"
    )
    prepare_parser.add_argument("--project-id", required=True)
    prepare_parser.add_argument(
        "--database", help="Target database (default: configured database)"
    )
    prepare_parser.add_argument(
        "sql_file",
        type=Path,
        nargs="?",
        help="Migration script (default: read from stdin)",
    )

    complete_parser = subparsers.add_parser(
        "complete", help="Apply a staged migration to its parent branch"
    )
    complete_parser.add_argument("migration_id")

    abandon_parser = subparsers.add_parser(
        "abandon", help="Drop a staged migration and its temporary branch"
    )
    abandon_parser.add_argument("migration_id")
    abandon_parser.add_argument(
        "--force",
        action="store_true",
        help="Take over a migration stuck in the committing state",
    )

    show_parser = subparsers.add_parser("show", help="Show one staged migration")
    show_parser.add_argument("migration_id")

    subparsers.add_parser("pending", help="List staged migrations")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )

    if args.command == "tools":
        return cmd_tools(args)
    elif args.command == "call":
        return cmd_call(args)
    elif args.command == "prepare":
        return cmd_prepare(args)
    elif args.command == "complete":
        return cmd_complete(args)
    elif args.command == "abandon":
        return cmd_abandon(args)
    elif args.command == "show":
        return cmd_show(args)
    else:
        return cmd_pending(args)


def _load_tools(args: argparse.Namespace) -> NeonTools:
    config = build_config_and_validate(
        api_key=getattr(args, "api_key", None),
        registry_path=getattr(args, "registry_path", None),
        profile=getattr(args, "profile", None),
    )
    return build_tools(config)


def _print_result(result: ToolResult) -> int:
    stream = sys.stderr if result.is_error else sys.stdout
    for part in result.content:
        print(part["text"], file=stream)
    return 1 if result.is_error else 0


def cmd_tools(args: argparse.Namespace) -> int:
    """List tool names with the first line of each description."""
    for definition in TOOL_DEFINITIONS:
        summary = definition.description.strip().splitlines()[0]
        print(f"  {definition.name}: {summary}")
    return 0


def cmd_call(args: argparse.Namespace) -> int:
    """Invoke any tool with JSON arguments."""
    try:
        arguments = json.loads(args.arguments)
    except json.JSONDecodeError as e:
        print(f"Invalid --args JSON: {e}", file=sys.stderr)
        return 1

    try:
        tools = _load_tools(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    return _print_result(tools.call_tool(args.name, arguments))


def cmd_prepare(args: argparse.Namespace) -> int:
    """Stage a migration script."""
    try:
        if args.sql_file is None:
            script = sys.stdin.read()
        else:
            script = args.sql_file.read_text()
    except OSError as e:
        print(f"Could not read migration script: {e}", file=sys.stderr)
        return 1

    try:
        tools = _load_tools(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    arguments = {"migrationSql": script, "projectId": args.project_id}
    if args.database:
        arguments["databaseName"] = args.database
    return _print_result(tools.call_tool("prepare_database_migration", arguments))


def cmd_complete(args: argparse.Namespace) -> int:
    """Commit a staged migration."""
    try:
        tools = _load_tools(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    return _print_result(
        tools.call_tool(
            "complete_database_migration", {"migrationId": args.migration_id}
        )
    )


def cmd_abandon(args: argparse.Namespace) -> int:
    """Drop a staged migration without applying it."""
    try:
        tools = _load_tools(args)
        branch = tools.orchestrator.abandon(args.migration_id, force=args.force)
        print(f"Abandoned migration {args.migration_id}")
        print(f"Deleted temporary branch {branch.id}")
        return 0
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except PgstageError as e:
        print(f"Abandon error: {e}", file=sys.stderr)
        return 1


def cmd_show(args: argparse.Namespace) -> int:
    """Print one registry entry as JSON."""
    try:
        tools = _load_tools(args)
        migration = tools.orchestrator.get(args.migration_id)
        print(json.dumps(migration.to_dict(), indent=2))
        return 0
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except PgstageError as e:
        print(f"Show error: {e}", file=sys.stderr)
        return 1


def cmd_pending(args: argparse.Namespace) -> int:
    """List staged migrations that have not been committed."""
    try:
        tools = _load_tools(args)
        pending = tools.orchestrator.pending()

        if not pending:
            print("No staged migrations")
            return 0

        print(f"Staged migrations ({len(pending)}):")
        for migration in pending:
            status = migration.state.value
            if migration.last_error:
                status += f", last error: {migration.last_error}"
            print(
                f"  {migration.id}: project {migration.project_id}, "
                f"branch {migration.staging_branch.id} -> "
                f"{migration.target_branch_id} [{status}]"
            )
        return 0
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except PgstageError as e:
        print(f"Pending error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
