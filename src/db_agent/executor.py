"""Migration executor.

Applies migration files to the database one statement at a time and keeps
track of them in a dedicated table.

Each migration ends in one of three states:
- skipped: the tracking table already has a record for the filename
- success: every statement ran; a record with the generated rollback SQL is
  stored and each created table is probed
- failed: the first rejected statement aborts the file; later statements
  are never sent

Batches are fail-fast. When a batch fails, a manual recovery script is
written to the project root so the remaining work can be applied by hand.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import MigrationConfig, get_config
from .db import (
    SETUP_FUNCTIONS_SQL,
    DatabaseClient,
    eq_filter,
    get_db,
    is_missing_function,
    is_missing_relation,
)
from .errors import (
    ExecSqlUnavailableError,
    InitializationError,
    MigrationNotFoundError,
    RollbackUnavailableError,
    StatementExecutionError,
)
from .files import FileManager
from .idempotency import validate_idempotency
from .impact import analyze_impact
from .rollback import RollbackPlan, build_rollback
from .sql_parser import extract_created_tables, parse_statements
from .state import StateAnalyzer

logger = logging.getLogger(__name__)

PREVIEW_WIDTH = 60


def tracking_table_sql(table: str) -> str:
    """DDL of the migration tracking table and its indexes."""
    return f"""-- Create migrations tracking table if it doesn't exist
CREATE TABLE IF NOT EXISTS {table} (
  id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
  filename TEXT NOT NULL UNIQUE,
  description TEXT,
  executed_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
  rollback_sql TEXT,
  checksum TEXT,
  created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

-- Create indexes for faster lookups
CREATE INDEX IF NOT EXISTS idx_migrations_filename ON {table}(filename);
CREATE INDEX IF NOT EXISTS idx_migrations_executed_at ON {table}(executed_at);

COMMENT ON TABLE {table} IS 'Database Agent migrations tracking table';
"""


def statement_preview(statement: str, width: int = PREVIEW_WIDTH) -> str:
    """One-line preview of a statement, truncated to ``width`` characters."""
    flat = statement.replace("\n", " ")
    return flat[:width] + "..." if len(flat) > width else flat


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class MigrationInfo:
    """A migration file, identified by its filename."""

    filename: str
    filepath: Path | None = None
    timestamp: str = ""
    description: str = ""
    executed: bool = False
    executed_at: datetime | None = None
    rollback_sql: str | None = None


@dataclass(frozen=True)
class RollbackInfo:
    can_rollback: bool
    rollback_sql: str | None = None


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of one execution attempt."""

    success: bool
    migration: MigrationInfo
    error: str | None = None
    tables_created: list[str] = field(default_factory=list)
    rollback_info: RollbackInfo | None = None
    skipped: bool = False
    statements_executed: int = 0
    failed_statement: str | None = None


@dataclass
class MigrationRecord:
    """A row of the tracking table."""

    filename: str
    description: str = ""
    executed_at: datetime | None = None
    rollback_sql: str | None = None
    checksum: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationRecord:
        return cls(
            filename=data["filename"],
            description=data.get("description") or "",
            executed_at=_parse_timestamp(data.get("executed_at")),
            rollback_sql=data.get("rollback_sql"),
            checksum=data.get("checksum"),
        )

    def to_info(self, filepath: Path | None = None) -> MigrationInfo:
        info = parse_migration_info(self.filename, filepath)
        return replace(
            info,
            description=self.description or info.description,
            executed=True,
            executed_at=self.executed_at,
            rollback_sql=self.rollback_sql,
        )


@dataclass
class ParsedMigration:
    statements: list[str]
    tables_created: list[str]
    rollback: RollbackPlan


@dataclass
class SchemaVerification:
    valid: bool
    missing: list[str] = field(default_factory=list)
    extra: list[str] = field(default_factory=list)


@dataclass
class MigrationStatus:
    executed: list[MigrationInfo] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)


def parse_migration_info(filename: str, filepath: Path | None = None) -> MigrationInfo:
    """Split ``<timestamp>_<description_words>.sql`` into its parts.

    >>> parse_migration_info("20240101120000_create_users.sql").description
    'create users'
    """
    stem = filename.removesuffix(".sql")
    timestamp, _, rest = stem.partition("_")
    return MigrationInfo(
        filename=filename,
        filepath=filepath,
        timestamp=timestamp,
        description=rest.replace("_", " "),
    )


def migration_checksum(filename: str) -> str:
    return hashlib.sha256(filename.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class MigrationExecutor:
    """Runs migration files against the database and tracks them."""

    def __init__(
        self,
        db: DatabaseClient | None = None,
        project_root: Path | None = None,
        state_analyzer: StateAnalyzer | None = None,
        config: MigrationConfig | None = None,
    ):
        self._db = db
        self._project_root = project_root
        self._state_analyzer = state_analyzer
        self._config = config
        self._initialized = False
        self.exec_sql_available = True
        self.setup_file: Path | None = None

    @property
    def db(self) -> DatabaseClient:
        if self._db is None:
            self._db = get_db()
        return self._db

    @property
    def project_root(self) -> Path:
        if self._project_root is None:
            self._project_root = get_config().project.root
        return self._project_root

    @property
    def config(self) -> MigrationConfig:
        if self._config is None:
            self._config = get_config().migrations
        return self._config

    @property
    def state_analyzer(self) -> StateAnalyzer:
        if self._state_analyzer is None:
            self._state_analyzer = StateAnalyzer(
                db=self.db,
                project_root=self.project_root,
                migrations_table=self.config.table,
                migration_dirs=self.config.directories,
            )
        return self._state_analyzer

    @property
    def files(self) -> FileManager:
        return FileManager(self.project_root)

    # -- setup --------------------------------------------------------------

    async def initialize(self) -> None:
        """Check connectivity and make sure the tracking table exists.

        Raises:
            InitializationError: The database is unreachable or rejected the
                tracking table DDL for a reason other than exec_sql missing.
        """
        logger.info("Initializing migration executor...")
        try:
            await self.db.list_tables()
        except Exception as e:
            if not is_missing_function(e, "get_public_tables"):
                raise InitializationError(f"Cannot connect to database: {e}") from e
            logger.warning("Schema introspection functions are not installed: %s", e)

        try:
            await self.db.exec_sql(tracking_table_sql(self.config.table))
        except Exception as e:
            if not is_missing_function(e, "exec_sql"):
                raise InitializationError(
                    f"Could not create migrations table {self.config.table}: {e}"
                ) from e
            self.exec_sql_available = False
            self.setup_file = self.write_setup_script()
            logger.warning(
                "exec_sql is not available. Run %s in the Supabase SQL editor "
                "to enable automatic migrations.",
                self.setup_file,
            )
        else:
            logger.info("Migrations table %s is ready", self.config.table)

        self._initialized = True

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise InitializationError(
                "Migration executor not initialized. Call initialize() first."
            )

    def write_setup_script(self) -> Path:
        """Write the helper functions and tracking table DDL for manual setup."""
        content = SETUP_FUNCTIONS_SQL + "\n" + tracking_table_sql(self.config.table)
        return self.files.write_file(self.config.setup_file, content)

    # -- parsing ------------------------------------------------------------

    def parse_migration_sql(self, sql: str) -> ParsedMigration:
        """Split a migration and derive its created tables and rollback script."""
        statements = parse_statements(sql)
        logger.info("Parsed %d SQL statements", len(statements))
        for number, statement in enumerate(statements, 1):
            logger.debug("Statement %d: %s", number, statement_preview(statement))

        tables = extract_created_tables(statements)
        logger.info("Tables to be created: %s", ", ".join(tables) or "none")

        rollback = build_rollback(statements)
        for item in rollback.irreversible:
            logger.warning(
                "Rollback will not undo %s statement (%s): %s",
                item.kind.value,
                item.reason,
                statement_preview(item.statement),
            )
        return ParsedMigration(statements=statements, tables_created=tables, rollback=rollback)

    # -- execution ----------------------------------------------------------

    async def execute_migration(self, path: Path | str) -> MigrationResult:
        """Execute one migration file.

        Database and file errors never escape; they are returned as a
        failed ``MigrationResult`` carrying the error text.
        """
        self._require_initialized()
        path = Path(path)
        info = parse_migration_info(path.name, path)
        logger.info("Executing migration: %s", path.name)

        try:
            if await self.is_migration_executed(path.name):
                logger.warning("Migration %s already executed, skipping", path.name)
                return MigrationResult(
                    success=True, migration=replace(info, executed=True), skipped=True
                )
            sql = path.read_text(encoding="utf-8")
            await self._check_idempotency(sql)
            parsed = self.parse_migration_sql(sql)
            rollback_info = RollbackInfo(parsed.rollback.can_rollback, parsed.rollback.sql)
            await self._execute_statements(parsed.statements)
        except StatementExecutionError as e:
            logger.error("Migration %s failed: %s", path.name, e)
            return MigrationResult(
                success=False,
                migration=info,
                error=str(e),
                tables_created=parsed.tables_created,
                rollback_info=rollback_info,
                statements_executed=e.index,
                failed_statement=e.statement,
            )
        except Exception as e:
            logger.error("Migration execution failed for %s: %s", path.name, e)
            return MigrationResult(success=False, migration=info, error=f"{path.name}: {e}")

        await self._record_migration(info, parsed.rollback.sql)
        logger.info("Migration %s executed successfully", path.name)
        await self._verify_tables_created(parsed.tables_created)

        return MigrationResult(
            success=True,
            migration=replace(info, executed=True, rollback_sql=parsed.rollback.sql),
            tables_created=parsed.tables_created,
            rollback_info=rollback_info,
            statements_executed=len(parsed.statements),
        )

    async def execute_migrations(self, paths: Sequence[Path | str]) -> list[MigrationResult]:
        """Execute migrations in order, stopping at the first failure."""
        results: list[MigrationResult] = []
        total = len(paths)

        for number, path in enumerate(paths, 1):
            logger.info("[%d/%d] Processing %s", number, total, Path(path).name)
            result = await self.execute_migration(path)
            results.append(result)
            if not result.success:
                logger.error("Migration failed: %s", result.error)
                logger.warning("Stopping migration execution due to failure")
                break

        if any(r.success and not r.skipped for r in results):
            self.state_analyzer.invalidate()

        failed = [r for r in results if not r.success]
        logger.info(
            "Migration summary: %d successful, %d failed",
            len(results) - len(failed),
            len(failed),
        )
        if failed:
            try:
                fallback = self.write_fallback_script(paths, failed)
                logger.warning("Manual recovery script written to %s", fallback)
            except (OSError, ValueError) as e:
                logger.error("Could not write manual recovery script: %s", e)
        return results

    async def is_migration_executed(self, filename: str) -> bool:
        try:
            rows = await self.db.query(
                self.config.table,
                f"{eq_filter('filename', filename)}&limit=1",
                select="filename",
            )
        except Exception as e:
            logger.warning("Could not check migration %s: %s", filename, e)
            return False
        return bool(rows)

    async def _check_idempotency(self, sql: str) -> None:
        """Warn when a migration touches existing objects with non-idempotent SQL."""
        try:
            state = await self.state_analyzer.get_system_state()
        except Exception as e:
            logger.warning("Could not analyze system state: %s", e)
            return

        impact = analyze_impact(sql, state)
        if not impact.requires_idempotency_check:
            return

        if impact.tables_modified:
            logger.info("Tables already exist: %s", ", ".join(impact.tables_modified))
        for conflict in impact.potential_conflicts:
            logger.info("Potential conflict: %s", conflict)

        report = validate_idempotency(sql)
        if report.is_idempotent:
            logger.info("SQL is idempotent, safe to execute")
            return
        logger.warning("SQL may not be idempotent. Issues found:")
        for issue in report.issues:
            logger.warning("  - %s", issue)
        logger.warning("Proceeding with caution...")

    async def _execute_statements(self, statements: list[str]) -> None:
        logger.info("Executing %d SQL statements...", len(statements))
        for index, statement in enumerate(statements):
            logger.debug(
                "Executing statement %d/%d: %s",
                index + 1,
                len(statements),
                statement_preview(statement),
            )
            try:
                await self.db.exec_sql(statement)
            except Exception as e:
                if is_missing_function(e, "exec_sql"):
                    message = str(ExecSqlUnavailableError(setup_file=self.setup_file))
                else:
                    message = str(e)
                raise StatementExecutionError(message, index, statement) from e

    async def _record_migration(self, info: MigrationInfo, rollback_sql: str | None) -> None:
        try:
            await self.db.insert(
                self.config.table,
                {
                    "filename": info.filename,
                    "description": info.description,
                    "rollback_sql": rollback_sql,
                    "checksum": migration_checksum(info.filename),
                },
                return_data=False,
            )
        except Exception as e:
            logger.warning("Could not record migration %s: %s", info.filename, e)

    async def _verify_tables_created(self, tables: list[str]) -> None:
        for table in tables:
            try:
                await self.db.query(table, "limit=1")
            except Exception as e:
                if is_missing_relation(e):
                    logger.error("Table %s was not created successfully", table)
                else:
                    logger.warning("Could not verify table %s: %s", table, e)
            else:
                logger.info("Table %s verified", table)

    # -- recovery -----------------------------------------------------------

    def write_fallback_script(
        self, paths: Sequence[Path | str], failed: Sequence[MigrationResult]
    ) -> Path:
        """Write a script for applying the failed and unattempted migrations by hand.

        Args:
            paths: The whole batch, in execution order
            failed: Failed results of the batch

        Returns:
            Path of the written script
        """
        failed_names = {r.migration.filename for r in failed}
        names = [Path(p).name for p in paths]
        first = min((names.index(n) for n in failed_names if n in names), default=0)
        remaining = [Path(p) for p in paths][first:]

        lines = [
            "-- Manual database setup",
            f"-- Generated at: {datetime.now(UTC).isoformat()}",
            "--",
            "-- Automatic migration execution failed. Run this script in the",
            "-- Supabase SQL editor (or with psql) to apply the remaining",
            "-- migrations by hand, then re-run `db-agent migrations status`.",
            "--",
            "-- Failures:",
        ]
        for result in failed:
            for number, line in enumerate((result.error or "unknown error").splitlines()):
                prefix = f"--   {result.migration.filename}: " if number == 0 else "--     "
                lines.append(prefix + line)
        lines.append("")

        for path in remaining:
            lines.extend(["-- " + "=" * 60, f"-- Migration: {path.name}", "-- " + "=" * 60])
            try:
                statements = parse_statements(path.read_text(encoding="utf-8"))
            except OSError as e:
                lines.extend([f"-- Could not read {path}: {e}", ""])
                continue
            for statement in statements:
                lines.extend([statement, ""])

        return self.files.write_file(self.config.fallback_file, "\n".join(lines))

    # -- rollback -----------------------------------------------------------

    async def get_migration_record(self, filename: str) -> MigrationRecord | None:
        rows = await self.db.query(
            self.config.table, f"{eq_filter('filename', filename)}&limit=1"
        )
        return MigrationRecord.from_dict(rows[0]) if rows else None

    async def rollback_migration(self, filename: str) -> bool:
        """Run the stored rollback SQL of a migration and delete its record.

        Returns False when the database rejects the lookup or the rollback.

        Raises:
            MigrationNotFoundError: No record exists for ``filename``.
            RollbackUnavailableError: The record holds no rollback SQL.
        """
        self._require_initialized()
        logger.info("Rolling back migration: %s", filename)

        try:
            record = await self.get_migration_record(filename)
        except Exception as e:
            logger.error("Could not read migration record %s: %s", filename, e)
            return False
        if record is None:
            raise MigrationNotFoundError(f"Migration {filename} not found in records")
        if not record.rollback_sql:
            raise RollbackUnavailableError(
                f"No rollback SQL available for migration {filename}"
            )

        try:
            await self.db.exec_sql(record.rollback_sql)
        except Exception as e:
            logger.error("Rollback execution failed for %s: %s", filename, e)
            return False

        try:
            await self.db.delete(self.config.table, {"filename": filename})
        except Exception as e:
            logger.warning("Could not remove migration record %s: %s", filename, e)

        self.state_analyzer.invalidate()
        logger.info("Migration %s rolled back successfully", filename)
        return True

    # -- inspection ---------------------------------------------------------

    async def verify_database_schema(self, expected: Sequence[str]) -> SchemaVerification:
        """Compare the live public tables with ``expected``.

        ``extra`` lists unexpected tables, ignoring ``_``-prefixed ones and
        the tracking table. When the catalog cannot be read, each expected
        table is probed instead and ``extra`` stays empty.
        """
        try:
            tables = await self.db.list_tables()
        except Exception as e:
            logger.warning("Could not query schema catalog, probing tables: %s", e)
            missing = [t for t in expected if not await self._probe_table(t)]
            return SchemaVerification(valid=not missing, missing=missing)

        missing = [t for t in expected if t not in tables]
        extra = [
            t
            for t in tables
            if t not in expected and not t.startswith("_") and t != self.config.table
        ]
        logger.info("Schema verification completed")
        return SchemaVerification(valid=not missing, missing=missing, extra=extra)

    async def _probe_table(self, table: str) -> bool:
        try:
            await self.db.query(table, "limit=1")
        except Exception as e:
            if is_missing_relation(e):
                return False
            logger.warning("Could not verify table %s: %s", table, e)
        return True

    def _discover_migration_files(self) -> dict[str, Path]:
        """Migration files by filename; earlier directories win."""
        found: dict[str, Path] = {}
        for directory in self.config.directories:
            base = self.project_root / directory
            if not base.is_dir():
                continue
            for path in sorted(base.glob("*.sql")):
                found.setdefault(path.name, path)
        return found

    def find_migration_file(self, filename: str) -> Path | None:
        for directory in self.config.directories:
            candidate = self.project_root / directory / filename
            if candidate.is_file():
                return candidate
        return None

    async def get_migration_status(self) -> MigrationStatus:
        """Executed records (oldest first) and pending migration filenames."""
        try:
            rows = await self.db.query(self.config.table, "order=executed_at.asc")
        except Exception as e:
            logger.error("Failed to get migration status: %s", e)
            return MigrationStatus()

        files = self._discover_migration_files()
        executed = [
            MigrationRecord.from_dict(row).to_info(files.get(row["filename"])) for row in rows
        ]
        done = {info.filename for info in executed}
        pending = sorted(name for name in files if name not in done)
        return MigrationStatus(executed=executed, pending=pending)

    async def pending_migration_paths(self) -> list[Path]:
        status = await self.get_migration_status()
        files = self._discover_migration_files()
        return [files[name] for name in status.pending]
