"""Command-line interface for the database agent's migration core.

Usage:
    db-agent migrations status
    db-agent migrations run [<file> ...]
    db-agent migrations rollback <filename>
    db-agent migrations debug <file-or-filename>
    db-agent validate <file> [--strict]
    db-agent state [--refresh] [--json]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from .config import MigrationConfig, ProjectConfig
from .db import close_db
from .errors import DbAgentError, MigrationNotFoundError, RollbackUnavailableError
from .executor import MigrationExecutor, statement_preview
from .idempotency import validate_idempotency
from .state import StateAnalyzer


def _run(command: Callable[[], Awaitable[int]]) -> int:
    """Run an async command and release the database client afterwards."""

    async def runner() -> int:
        try:
            return await command()
        finally:
            await close_db()

    try:
        return asyncio.run(runner())
    except (DbAgentError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _offline_executor() -> MigrationExecutor:
    """Executor for commands that only read migration files."""
    return MigrationExecutor(
        project_root=ProjectConfig.from_env().root, config=MigrationConfig.from_env()
    )


def _resolve_migration(executor: MigrationExecutor, name: str) -> Path | None:
    path = Path(name)
    if path.is_file():
        return path
    return executor.find_migration_file(path.name)


# ---------------------------------------------------------------------------
# migrations
# ---------------------------------------------------------------------------


def cmd_migrations_status(args: argparse.Namespace) -> int:
    async def command() -> int:
        executor = MigrationExecutor()
        await executor.initialize()
        status = await executor.get_migration_status()

        print(f"Executed migrations ({len(status.executed)}):")
        for info in status.executed:
            when = info.executed_at.isoformat() if info.executed_at else "unknown"
            rollback = "rollback available" if info.rollback_sql else "no rollback"
            print(f"  {info.filename}  {when}  ({rollback})")
        print(f"Pending migrations ({len(status.pending)}):")
        for filename in status.pending:
            print(f"  {filename}")
        return 0

    return _run(command)


def cmd_migrations_run(args: argparse.Namespace) -> int:
    async def command() -> int:
        executor = MigrationExecutor()
        await executor.initialize()

        if args.files:
            paths: list[Path] = []
            for name in args.files:
                path = _resolve_migration(executor, name)
                if path is None:
                    print(f"Migration file not found: {name}", file=sys.stderr)
                    return 1
                paths.append(path)
        else:
            paths = await executor.pending_migration_paths()

        if not paths:
            print("No pending migrations")
            return 0

        results = await executor.execute_migrations(paths)
        for result in results:
            if result.skipped:
                mark = "SKIP"
            elif result.success:
                mark = "OK"
            else:
                mark = "FAIL"
            print(f"[{mark}] {result.migration.filename}")
            if result.error:
                print(f"       {result.error}")
        not_run = len(paths) - len(results)
        if not_run:
            print(f"{not_run} migration(s) not attempted")
        return 0 if all(r.success for r in results) else 1

    return _run(command)


def cmd_migrations_rollback(args: argparse.Namespace) -> int:
    async def command() -> int:
        executor = MigrationExecutor()
        await executor.initialize()
        try:
            rolled_back = await executor.rollback_migration(args.filename)
        except (MigrationNotFoundError, RollbackUnavailableError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if rolled_back:
            print(f"Rolled back {args.filename}")
            return 0
        print(f"Rollback of {args.filename} failed", file=sys.stderr)
        return 1

    return _run(command)


def cmd_migrations_debug(args: argparse.Namespace) -> int:
    executor = _offline_executor()
    path = _resolve_migration(executor, args.migration)
    if path is None:
        print(f"Migration file not found: {args.migration}", file=sys.stderr)
        return 1

    parsed = executor.parse_migration_sql(path.read_text(encoding="utf-8"))
    print(f"Migration: {path}")
    print(f"Statements: {len(parsed.statements)}")
    print(f"Tables created: {', '.join(parsed.tables_created) or 'none'}")
    for number, statement in enumerate(parsed.statements, 1):
        print(f"  {number:>3}. {statement_preview(statement)}")
    print()
    print("Rollback SQL:")
    print(parsed.rollback.sql or "  (none)")
    if parsed.rollback.irreversible:
        print()
        print("Not undone by rollback:")
        for item in parsed.rollback.irreversible:
            print(f"  - [{item.kind.value}] {item.reason}: {statement_preview(item.statement)}")
    return 0


# ---------------------------------------------------------------------------
# validate / state
# ---------------------------------------------------------------------------


def cmd_validate(args: argparse.Namespace) -> int:
    path = Path(args.file)
    if not path.is_file():
        print(f"File not found: {path}", file=sys.stderr)
        return 1
    report = validate_idempotency(path.read_text(encoding="utf-8"))
    if report.is_idempotent:
        print(f"{path}: idempotent")
        return 0
    print(f"{path}: {len(report.issues)} issue(s)")
    for issue in report.issues:
        print(f"  - {issue}")
    return 1 if args.strict else 0


def cmd_state(args: argparse.Namespace) -> int:
    async def command() -> int:
        state = await StateAnalyzer().get_system_state(force_refresh=args.refresh)
        if args.json:
            print(json.dumps(state.to_dict(), indent=2))
            return 0
        print(f"Tables ({len(state.database.tables)}): {', '.join(state.database.tables)}")
        print(f"Indexes: {len(state.database.indexes)}")
        print(f"API routes ({len(state.api.routes)}):")
        for route in state.api.routes:
            print(f"  {route.path} [{', '.join(route.methods)}]")
        using_db = [c for c in state.components.components if c.has_database]
        print(f"Components using the database: {len(using_db)}")
        print(
            f"Migrations: {len(state.migrations.executed)} executed, "
            f"{len(state.migrations.pending)} pending"
        )
        print("Features:")
        for name, feature in state.features.items():
            print(f"  {name}: {'implemented' if feature.implemented else 'missing'}")
        return 0

    return _run(command)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-agent", description="Idempotent migration tooling for the database agent"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrations = subparsers.add_parser("migrations", help="Manage database migrations")
    migration_commands = migrations.add_subparsers(dest="migration_command", required=True)

    status_parser = migration_commands.add_parser("status", help="Show executed and pending")
    status_parser.set_defaults(func=cmd_migrations_status)

    run_parser = migration_commands.add_parser("run", help="Run pending migrations")
    run_parser.add_argument("files", nargs="*", help="Migration files (default: all pending)")
    run_parser.set_defaults(func=cmd_migrations_run)

    rollback_parser = migration_commands.add_parser("rollback", help="Roll back a migration")
    rollback_parser.add_argument("filename", help="Migration filename as recorded")
    rollback_parser.set_defaults(func=cmd_migrations_rollback)

    debug_parser = migration_commands.add_parser(
        "debug", help="Parse a migration without executing it"
    )
    debug_parser.add_argument("migration", help="Migration path or filename")
    debug_parser.set_defaults(func=cmd_migrations_debug)

    validate_parser = subparsers.add_parser("validate", help="Check SQL for idempotency")
    validate_parser.add_argument("file", help="SQL file to check")
    validate_parser.add_argument(
        "--strict", action="store_true", help="Exit with status 1 when issues are found"
    )
    validate_parser.set_defaults(func=cmd_validate)

    state_parser = subparsers.add_parser("state", help="Show the system state snapshot")
    state_parser.add_argument("--refresh", action="store_true", help="Ignore the cache")
    state_parser.add_argument("--json", action="store_true", help="Print JSON")
    state_parser.set_defaults(func=cmd_state)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
