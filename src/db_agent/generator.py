"""State-aware generation of idempotent table SQL.

Text generation itself is delegated to a completion service; this module
only builds the prompt and normalizes whatever SQL comes back.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from .idempotency import TableColumn, add_column_sql, post_process_sql
from .impact import ImpactAnalysis, analyze_impact
from .state import StateAnalyzer, SystemState

logger = logging.getLogger(__name__)


@runtime_checkable
class CompletionClient(Protocol):
    """Anything that turns a prompt into text."""

    async def generate_text(self, prompt: str, context: str) -> str:
        ...


_PROMPT_TEMPLATE = """Generate comprehensive idempotent SQL for: {description}

## Table Details:
- Table name: {table}
- Columns: {columns}

## Current System State:
- Existing tables: {tables}
- Existing indexes: {indexes}
- Executed migrations: {migration_count} migrations

## Requirements:
- Use PostgreSQL syntax (for Supabase)
- ALL operations must be idempotent (use IF NOT EXISTS, IF EXISTS, etc.)
- Create table with proper column types and constraints
- Add primary key (UUID with gen_random_uuid() as default)
- Include created_at and updated_at timestamps with automatic updates
- Create indexes for performance (only if they don't exist)
- Add Row Level Security (RLS) policies, wrapped in DO blocks
- DO NOT include transaction commands (BEGIN, COMMIT, ROLLBACK, START TRANSACTION)
- Each statement should be independent and executable separately

## Response Format:
Return only the SQL migration code, no explanations or markdown formatting."""


def _describe_column(column: TableColumn) -> str:
    if column.constraints:
        return f"{column.name} ({column.type}, {column.constraints})"
    return f"{column.name} ({column.type})"


def build_table_prompt(
    description: str, table: str, columns: Sequence[TableColumn], state: SystemState
) -> str:
    return _PROMPT_TEMPLATE.format(
        description=description,
        table=table,
        columns=", ".join(_describe_column(c) for c in columns),
        tables=", ".join(state.database.tables) or "none",
        indexes=", ".join(state.database.indexes) or "none",
        migration_count=len(state.database.migrations_executed),
    )


def table_update_sql(
    table: str, columns: Sequence[TableColumn], generated_at: datetime | None = None
) -> str:
    """Add-column statements for a table that already exists."""
    stamp = (generated_at or datetime.now(UTC)).isoformat()
    parts = [f"-- Idempotent update for table: {table}", f"-- Generated at: {stamp}", ""]
    for column in columns:
        parts.append(add_column_sql(table, column))
        parts.append("")
    return "\n".join(parts)


def _strip_code_fence(text: str) -> str:
    lines = text.strip().splitlines()
    if lines and lines[0].startswith("```"):
        lines = lines[1:]
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
    return "\n".join(lines)


class IdempotentSQLGenerator:
    """Produces table SQL that is safe to run against the current database."""

    def __init__(
        self,
        state: StateAnalyzer | None = None,
        completion: CompletionClient | None = None,
    ):
        self._state = state
        self.completion = completion

    @property
    def state(self) -> StateAnalyzer:
        if self._state is None:
            self._state = StateAnalyzer()
        return self._state

    async def generate_table_sql(
        self,
        description: str,
        table: str,
        columns: Sequence[TableColumn],
        force_recreate: bool = False,
    ) -> str:
        """SQL that brings ``table`` to the requested shape.

        An existing table gets guarded ``ADD COLUMN`` blocks unless
        ``force_recreate`` is set. Otherwise the completion service writes
        the migration and the result is post-processed for idempotency.

        Raises:
            RuntimeError: A new table is requested and no completion client
                is configured.
        """
        logger.info("Generating idempotent SQL for table: %s", table)
        snapshot = await self.state.get_system_state()

        if table in snapshot.database.tables and not force_recreate:
            logger.info("Table %s already exists, generating update SQL instead", table)
            return table_update_sql(table, columns)

        if self.completion is None:
            raise RuntimeError("No completion client configured for SQL generation")

        prompt = build_table_prompt(description, table, columns, snapshot)
        raw = await self.completion.generate_text(
            prompt, f"Generate idempotent SQL for {table} table"
        )
        sql = post_process_sql(_strip_code_fence(raw), f"{table} table")
        logger.info("Generated idempotent SQL for table: %s", table)
        return sql

    async def analyze_impact(self, sql: str) -> ImpactAnalysis:
        """Impact of ``sql`` against the cached system state."""
        return analyze_impact(sql, await self.state.get_system_state())
