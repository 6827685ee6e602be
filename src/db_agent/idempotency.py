"""Idempotent SQL: post-processing, validation and generation helpers.

``post_process_sql`` rewrites generated SQL so the script can be re-run
safely. It walks the top-level statements found by the tokenizer and
rewrites by leading keyword only, so text inside strings, comments and
function bodies is never touched:

- ``CREATE [UNIQUE] INDEX`` / ``CREATE TABLE`` gain ``IF NOT EXISTS``
- ``DROP TABLE`` / ``DROP INDEX`` gain ``IF EXISTS``
- transaction-control statements and transaction-boundary comments go away
- runs of blank lines collapse to a single blank line
- a header comment is prepended once

``CREATE POLICY``, ``CREATE TRIGGER`` and ``ADD COLUMN`` have no portable
``IF NOT EXISTS`` form; the ``*_sql`` helpers below wrap them in ``DO``
blocks that check the catalog first. ``validate_idempotency`` reports the
patterns that are still unsafe.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from .sql_parser import (
    QUALIFIED_IDENT,
    StatementKind,
    is_transaction_control,
    mask_literals,
    quote_ident,
    split_script,
    statement_kind,
    tokenize,
    unquote_identifier,
)

logger = logging.getLogger(__name__)

HEADER_MARKER = "-- Idempotent Migration"
SEED_BATCH_SIZE = 50

_REWRITES: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(
            r"^(CREATE\s+(?:(?:GLOBAL|LOCAL)\s+)?(?:(?:TEMP|TEMPORARY|UNLOGGED)\s+)?TABLE)"
            r"(?=\s)(?!\s+IF\s+NOT\s+EXISTS\b)",
            re.IGNORECASE,
        ),
        "IF NOT EXISTS",
    ),
    (
        re.compile(
            r"^(CREATE\s+(?:UNIQUE\s+)?INDEX(?:\s+CONCURRENTLY)?)"
            r"(?=\s)(?!\s+(?:IF\s+NOT\s+EXISTS|ON|CONCURRENTLY)\b)",
            re.IGNORECASE,
        ),
        "IF NOT EXISTS",
    ),
    (
        re.compile(r"^(DROP\s+TABLE)(?=\s)(?!\s+IF\s+EXISTS\b)", re.IGNORECASE),
        "IF EXISTS",
    ),
    (
        re.compile(
            r"^(DROP\s+INDEX(?:\s+CONCURRENTLY)?)(?=\s)(?!\s+(?:IF\s+EXISTS|CONCURRENTLY)\b)",
            re.IGNORECASE,
        ),
        "IF EXISTS",
    ),
]

_TRANSACTION_COMMENT_RE = re.compile(
    r"^--\s*(?:(?:begin|start|end)\s+transaction|(?:commit|rollback)\b.*\btransaction)",
    re.IGNORECASE,
)

_HAS_IF_NOT_EXISTS = re.compile(r"\bIF\s+NOT\s+EXISTS\b", re.IGNORECASE)
_HAS_IF_EXISTS = re.compile(r"\bIF\s+EXISTS\b", re.IGNORECASE)
_ADD_COLUMN_RE = re.compile(r"\bADD\s+COLUMN\s+(?!IF\s+NOT\s+EXISTS\b)", re.IGNORECASE)
_INSERT_GUARD_RE = re.compile(r"\bWHERE\s+NOT\s+EXISTS\b|\bON\s+CONFLICT\b", re.IGNORECASE)
_CREATE_POLICY_RE = re.compile(
    rf"^CREATE\s+POLICY\s+({QUALIFIED_IDENT})\s+ON\s+({QUALIFIED_IDENT})", re.IGNORECASE
)
_DROP_POLICY_RE = re.compile(
    rf"^DROP\s+POLICY\s+IF\s+EXISTS\s+({QUALIFIED_IDENT})\s+ON\s+({QUALIFIED_IDENT})",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------


def _whole_lines(sql: str, start: int, end: int) -> tuple[int, int]:
    """Widen [start, end) to full lines when nothing else shares them."""
    line_start = sql.rfind("\n", 0, start) + 1
    line_end = sql.find("\n", end)
    line_end = len(sql) if line_end == -1 else line_end
    if sql[line_start:start].strip() or sql[end:line_end].strip():
        return start, end
    return line_start, min(line_end + 1, len(sql))


def _literal_offsets(sql: str) -> list[tuple[int, int]]:
    return [
        (token.start, token.end)
        for token in tokenize(sql)
        if token.kind in ("string", "dollar")
    ]


def collapse_blank_lines(sql: str) -> str:
    """Reduce every run of blank lines outside literals to one blank line."""
    literals = _literal_offsets(sql)
    out: list[str] = []
    offset = 0
    blank_run = 0
    for line in sql.splitlines(keepends=True):
        inside = any(lo < offset < hi for lo, hi in literals)
        if not line.strip() and not inside:
            blank_run += 1
            if blank_run > 1:
                offset += len(line)
                continue
        else:
            blank_run = 0
        out.append(line)
        offset += len(line)
    return "".join(out)


def build_header(migration_name: str, generated_at: datetime | None = None) -> str:
    stamp = (generated_at or datetime.now(UTC)).isoformat()
    return (
        f"{HEADER_MARKER}: {migration_name}\n"
        f"-- Generated at: {stamp}\n"
        "-- This migration can be run multiple times safely\n"
        "\n"
    )


def post_process_sql(
    sql: str,
    migration_name: str,
    generated_at: datetime | None = None,
) -> str:
    """Rewrite generated SQL so that it can safely run more than once.

    Deterministic for a fixed ``generated_at``, and a fixed point:
    processing the output again returns it unchanged.
    """
    masked = mask_literals(sql)
    edits: list[tuple[int, int, str]] = []

    for span in split_script(sql):
        head = masked[span.body_start:span.end]
        if is_transaction_control(head):
            lo, hi = _whole_lines(sql, span.body_start, span.end)
            edits.append((lo, hi, ""))
            continue
        for pattern, guard in _REWRITES:
            match = pattern.match(head)
            if match:
                keyword = match.group(1)
                text = guard.lower() if keyword.islower() else guard
                at = span.body_start + match.end(1)
                edits.append((at, at, f" {text}"))
                break

    for token in tokenize(sql):
        if token.kind == "comment" and _TRANSACTION_COMMENT_RE.match(
            sql[token.start:token.end]
        ):
            lo, hi = _whole_lines(sql, token.start, token.end)
            edits.append((lo, hi, ""))

    processed = sql
    for lo, hi, replacement in sorted(edits, key=lambda e: (e[0], e[1]), reverse=True):
        processed = processed[:lo] + replacement + processed[hi:]

    if HEADER_MARKER not in processed:
        processed = build_header(migration_name, generated_at) + processed.lstrip("\n")
    return collapse_blank_lines(processed)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class IdempotencyReport:
    """Advisory result of ``validate_idempotency``."""

    is_idempotent: bool
    issues: list[str] = field(default_factory=list)


def _policy_key(match: re.Match[str]) -> tuple[str, str]:
    return unquote_identifier(match.group(1)), unquote_identifier(match.group(2))


def validate_idempotency(sql: str) -> IdempotencyReport:
    """Scan a script for statements that fail or duplicate data on re-run.

    Each issue is reported as ``"Line N: <problem>"`` where N is the line on
    which the offending statement starts. Keywords inside strings, comments
    and ``DO`` bodies are ignored.
    """
    masked = mask_literals(sql)
    insert_guarded = bool(_INSERT_GUARD_RE.search(masked))
    dropped_policies: set[tuple[str, str]] = set()
    issues: list[str] = []

    for span in split_script(sql):
        head = masked[span.body_start:span.end]
        line = sql.count("\n", 0, span.body_start) + 1
        kind = statement_kind(head)

        if kind is StatementKind.CREATE_TABLE and not _HAS_IF_NOT_EXISTS.search(head):
            issues.append(f"Line {line}: CREATE TABLE without IF NOT EXISTS")
        elif kind is StatementKind.CREATE_INDEX and not _HAS_IF_NOT_EXISTS.search(head):
            issues.append(f"Line {line}: CREATE INDEX without IF NOT EXISTS")
        elif kind is StatementKind.DROP_TABLE and not _HAS_IF_EXISTS.search(head):
            issues.append(f"Line {line}: DROP TABLE without IF EXISTS")
        elif kind is StatementKind.DROP_INDEX and not _HAS_IF_EXISTS.search(head):
            issues.append(f"Line {line}: DROP INDEX without IF EXISTS")
        elif kind is StatementKind.ALTER_TABLE and _ADD_COLUMN_RE.search(head):
            issues.append(f"Line {line}: ALTER TABLE ADD COLUMN without IF NOT EXISTS")
        elif kind is StatementKind.INSERT and not insert_guarded:
            issues.append(f"Line {line}: INSERT without existence check (may cause duplicates)")
        elif kind is StatementKind.CREATE_POLICY:
            match = _CREATE_POLICY_RE.match(head)
            if match is None or _policy_key(match) not in dropped_policies:
                issues.append(
                    f"Line {line}: CREATE POLICY without existence check (wrap it in a DO block)"
                )
        elif kind is StatementKind.OTHER:
            match = _DROP_POLICY_RE.match(head)
            if match:
                dropped_policies.add(_policy_key(match))

    return IdempotencyReport(is_idempotent=not issues, issues=issues)


# ---------------------------------------------------------------------------
# Generation helpers
# ---------------------------------------------------------------------------


@dataclass
class TableColumn:
    name: str
    type: str
    constraints: str | None = None
    nullable: bool = True
    default: str | None = None

    def definition(self) -> str:
        parts = [f"{self.name} {self.type}"]
        if self.constraints:
            parts.append(self.constraints)
        if self.default:
            parts.append(f"DEFAULT {self.default}")
        if not self.nullable:
            parts.append("NOT NULL")
        return " ".join(parts)


class InsertStrategy(Enum):
    """How seed rows are made safe to insert twice."""

    GUARDED = "guarded"  # per-row INSERT ... SELECT ... WHERE NOT EXISTS
    UPSERT = "upsert"  # batched INSERT ... ON CONFLICT (id) DO UPDATE


def format_sql_value(value: Any) -> str:
    """Render a Python value as a SQL literal.

    Text containing a backslash becomes an escape-string literal (``E'...'``)
    with backslashes doubled, so a trailing ``\\`` can never be read as an
    escaped closing quote.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return f"'{value.isoformat()}'"
    if isinstance(value, (dict, list)):
        text = json.dumps(value)
    else:
        text = str(value)
    quoted = text.replace("'", "''")
    if "\\" in text:
        return "E'" + quoted.replace("\\", "\\\\") + "'"
    return "'" + quoted + "'"


def create_table_sql(table: str, columns: Sequence[TableColumn]) -> str:
    definitions = ",\n    ".join(column.definition() for column in columns)
    return (
        f"-- Create table {table} (idempotent)\n"
        f"CREATE TABLE IF NOT EXISTS {table} (\n"
        f"    {definitions}\n"
        ");"
    )


def create_index_sql(
    table: str, index: str, columns: Sequence[str], unique: bool = False
) -> str:
    unique_kw = "UNIQUE " if unique else ""
    return (
        f"-- Create index {index} (idempotent)\n"
        f"CREATE {unique_kw}INDEX IF NOT EXISTS {index} ON {table} ({', '.join(columns)});"
    )


def add_column_sql(table: str, column: TableColumn) -> str:
    """Add a column only when ``information_schema`` does not list it yet."""
    return (
        f"-- Add column {column.name} if it doesn't exist\n"
        "DO $$\n"
        "BEGIN\n"
        "    IF NOT EXISTS (\n"
        "        SELECT 1\n"
        "        FROM information_schema.columns\n"
        "        WHERE table_schema = 'public'\n"
        f"          AND table_name = '{table}'\n"
        f"          AND column_name = '{column.name}'\n"
        "    ) THEN\n"
        f"        ALTER TABLE {table} ADD COLUMN {column.definition()};\n"
        "    END IF;\n"
        "END $$;"
    )


def rls_policy_sql(table: str, policy: str, operation: str, condition: str) -> str:
    """Create a row-level security policy guarded by a ``pg_policies`` lookup."""
    return (
        f"-- Create RLS policy {policy} (idempotent)\n"
        "DO $$\n"
        "BEGIN\n"
        "    IF NOT EXISTS (\n"
        "        SELECT 1 FROM pg_policies\n"
        "        WHERE schemaname = 'public'\n"
        f"        AND tablename = '{table}'\n"
        f"        AND policyname = '{policy}'\n"
        "    ) THEN\n"
        f"        CREATE POLICY {policy} ON {table}\n"
        f"        FOR {operation} USING ({condition});\n"
        "    END IF;\n"
        "END $$;"
    )


def trigger_sql(table: str, trigger: str, function: str) -> str:
    """Create a BEFORE UPDATE row trigger guarded by a ``pg_trigger`` lookup."""
    return (
        f"-- Create trigger {trigger} (idempotent)\n"
        "DO $$\n"
        "BEGIN\n"
        "    IF NOT EXISTS (\n"
        "        SELECT 1 FROM pg_trigger\n"
        f"        WHERE tgname = '{trigger}'\n"
        "    ) THEN\n"
        f"        CREATE TRIGGER {trigger}\n"
        f"            BEFORE UPDATE ON {table}\n"
        "            FOR EACH ROW\n"
        f"            EXECUTE FUNCTION {function}();\n"
        "    END IF;\n"
        "END $$;"
    )


def updated_at_function_sql() -> str:
    return (
        "-- Create updated_at trigger function (idempotent)\n"
        "CREATE OR REPLACE FUNCTION update_updated_at_column()\n"
        "RETURNS TRIGGER AS $$\n"
        "BEGIN\n"
        "    NEW.updated_at = NOW();\n"
        "    RETURN NEW;\n"
        "END;\n"
        "$$ language 'plpgsql';"
    )


def _column_union(rows: Sequence[Mapping[str, Any]]) -> list[str]:
    """Columns of the first row, then any extra keys in first-seen order."""
    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns


def _warn_inconsistent(table: str, rows: Sequence[Mapping[str, Any]]) -> None:
    expected = set(rows[0])
    inconsistent = sum(1 for row in rows if set(row) != expected)
    if inconsistent:
        logger.warning(
            "Found %d items with inconsistent structure in seed data for %s",
            inconsistent,
            table,
        )


def seed_rows_sql(table: str, rows: Sequence[Mapping[str, Any]]) -> str:
    """One ``INSERT ... SELECT ... WHERE NOT EXISTS`` statement per row.

    Every row must carry an ``id``; it is the existence check key.
    """
    if not rows:
        return f"-- No seed data provided for table: {table}"
    missing = [index for index, row in enumerate(rows) if row.get("id") is None]
    if missing:
        raise ValueError(
            f"Seed rows for {table} need an 'id' for the existence check "
            f"(missing in rows {missing})"
        )

    lines = [
        f"-- Insert seed data for {table} (idempotent)",
        f"-- {len(rows)} records to insert",
        "",
    ]
    for row in rows:
        columns = ", ".join(quote_ident(column) for column in row)
        values = ", ".join(format_sql_value(value) for value in row.values())
        lines.append(
            f"INSERT INTO {table} ({columns})\n"
            f"SELECT {values}\n"
            "WHERE NOT EXISTS (\n"
            f'    SELECT 1 FROM {table} WHERE "id" = {format_sql_value(row["id"])}\n'
            ");"
        )
        lines.append("")
    return "\n".join(lines)


def conflict_clause(columns: Sequence[str]) -> str:
    """``ON CONFLICT`` clause keyed on ``id`` (or the first column)."""
    key = "id" if "id" in columns else columns[0]
    updates = [column for column in columns if column not in ("id", "created_at")]
    if not updates:
        return f"ON CONFLICT ({quote_ident(key)}) DO NOTHING;"
    assignments = ", ".join(
        f"{quote_ident(column)} = EXCLUDED.{quote_ident(column)}" for column in updates
    )
    return f"ON CONFLICT ({quote_ident(key)}) DO UPDATE SET {assignments};"


def upsert_rows_sql(
    table: str,
    rows: Sequence[Mapping[str, Any]],
    batch_size: int = SEED_BATCH_SIZE,
) -> str:
    """Batched multi-row upserts; missing keys in a row are inserted as NULL."""
    if not rows:
        return f"-- No seed data provided for table: {table}"
    _warn_inconsistent(table, rows)

    columns = _column_union(rows)
    batches = [rows[i:i + batch_size] for i in range(0, len(rows), batch_size)]
    lines = [f"-- Idempotent seed data for table: {table}", f"-- Records: {len(rows)}", ""]

    for number, batch in enumerate(batches, 1):
        lines.append(f"-- Batch {number} of {len(batches)}")
        lines.append(f"INSERT INTO {table} ({', '.join(quote_ident(c) for c in columns)})")
        lines.append("VALUES")
        lines.append(
            ",\n".join(
                "  (" + ", ".join(format_sql_value(row.get(c)) for c in columns) + ")"
                for row in batch
            )
        )
        lines.append(conflict_clause(columns))
        lines.append("")
    return "\n".join(lines)


def seed_data_sql(
    table: str,
    rows: Sequence[Mapping[str, Any]],
    strategy: InsertStrategy = InsertStrategy.GUARDED,
) -> str:
    if strategy is InsertStrategy.UPSERT:
        return upsert_rows_sql(table, rows)
    return seed_rows_sql(table, rows)


def complete_migration_sql(
    description: str,
    table: str,
    columns: Sequence[TableColumn],
    *,
    include_indexes: bool = True,
    include_policies: bool = True,
    seed_rows: Sequence[Mapping[str, Any]] | None = None,
    strategy: InsertStrategy = InsertStrategy.GUARDED,
    generated_at: datetime | None = None,
) -> str:
    """Full idempotent migration for one table.

    Table, timestamp indexes, the ``updated_at`` trigger, RLS with a read
    policy and optional seed data, in that order.
    """
    stamp = (generated_at or datetime.now(UTC)).isoformat()
    rule = "-- " + "=" * 53
    sections = [
        rule,
        f"-- IDEMPOTENT MIGRATION: {table}",
        f"-- Description: {description}",
        f"-- Generated: {stamp}",
        "-- Safe to run multiple times",
        rule,
        "",
        create_table_sql(table, columns),
        "",
    ]
    if include_indexes:
        sections.append(create_index_sql(table, f"idx_{table}_created_at", ["created_at"]))
        sections.append(create_index_sql(table, f"idx_{table}_updated_at", ["updated_at"]))
        sections.append("")

    sections.append(updated_at_function_sql())
    sections.append("")
    sections.append(trigger_sql(table, f"{table}_updated_at", "update_updated_at_column"))
    sections.append("")

    if include_policies:
        sections.append(f"-- Enable RLS on {table}")
        sections.append(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;")
        sections.append("")
        sections.append(rls_policy_sql(table, f"{table}_select_policy", "SELECT", "true"))
        sections.append("")

    if seed_rows:
        sections.append(seed_data_sql(table, seed_rows, strategy))
        sections.append("")

    sections.append(f"-- Migration for {table} completed")
    sections.append("-- All operations are idempotent and safe to rerun")
    return "\n".join(sections)


@dataclass
class SeedDataReport:
    is_valid: bool
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def validate_seed_data(rows: Iterable[Mapping[str, Any]]) -> SeedDataReport:
    """Check seed rows for missing, null or duplicate ids and ragged columns."""
    rows = list(rows)
    report = SeedDataReport(is_valid=True)
    if not rows:
        report.errors.append("No seed data provided")
        report.is_valid = False
        return report

    if "id" not in rows[0]:
        report.errors.append("Missing required field: id")

    expected = set(rows[0])
    inconsistent = sum(1 for row in rows if set(row) != expected)
    if inconsistent:
        report.warnings.append(f"{inconsistent} items have inconsistent structure")

    ids = [row.get("id") for row in rows if row.get("id") is not None]
    if len(ids) != len({json.dumps(i, sort_keys=True, default=str) for i in ids}):
        report.errors.append("Duplicate IDs found in seed data")

    null_ids = sum(1 for row in rows if row.get("id") is None)
    if null_ids:
        report.errors.append(f"{null_ids} items have null/undefined IDs")

    report.is_valid = not report.errors
    return report
