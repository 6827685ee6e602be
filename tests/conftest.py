"""Pytest fixtures for db-agent tests."""

import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import unquote
from uuid import uuid4

import pytest
import respx

from db_agent.config import Config, MigrationConfig, SupabaseConfig, reset_config
from db_agent.db import SupabaseClient, reset_db
from db_agent.executor import MigrationExecutor
from db_agent.sql_parser import parse_statements
from db_agent.state import MemoryStateStore, StateAnalyzer

# =============================================================================
# Environment Setup
# =============================================================================


@pytest.fixture(autouse=True)
def setup_env(monkeypatch, tmp_path):
    """Set up test environment variables."""
    monkeypatch.setenv("SUPABASE_URL", "https://test.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "test-service-key")
    monkeypatch.setenv("DB_AGENT_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("STATE_CACHE_BACKEND", "memory")

    # Reset global config and client after each test
    yield
    reset_config()
    reset_db()


@pytest.fixture
def config():
    """Get test configuration."""
    return Config(
        supabase=SupabaseConfig(
            url="https://test.supabase.co",
            service_key="test-service-key",
        ),
    )


@pytest.fixture
def db_client(config):
    """Get a Supabase client configured for testing."""
    return SupabaseClient(config.supabase)


# =============================================================================
# Mock Supabase Responses
# =============================================================================


@pytest.fixture
def mock_supabase():
    """Mock Supabase API responses."""
    with respx.mock(assert_all_called=False) as respx_mock:
        yield respx_mock


# =============================================================================
# In-memory database
# =============================================================================

_CREATE_TABLE_RE = re.compile(
    r"CREATE\s+TABLE\s+(IF\s+NOT\s+EXISTS\s+)?(?:public\.)?(\w+)", re.IGNORECASE
)
_DROP_TABLE_RE = re.compile(r"DROP\s+TABLE\s+(IF\s+EXISTS\s+)?(?:public\.)?(\w+)", re.IGNORECASE)
_CREATE_INDEX_RE = re.compile(
    r"CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:CONCURRENTLY\s+)?(IF\s+NOT\s+EXISTS\s+)?(?!ON\b)(\w+)",
    re.IGNORECASE,
)
_DROP_INDEX_RE = re.compile(
    r"DROP\s+INDEX\s+(?:CONCURRENTLY\s+)?(IF\s+EXISTS\s+)?(\w+)", re.IGNORECASE
)


class FakeDatabase:
    """DatabaseClient double that keeps tables as lists of dict rows.

    Only the effects the migration core relies on are simulated: table and
    index creation or removal by ``exec_sql``, equality filters, ordering
    and limits on reads. With ``strict`` set, unguarded creates of existing
    tables or indexes and unguarded drops of missing ones fail the way
    PostgreSQL does.
    """

    def __init__(self, strict: bool = False) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.indexes: list[str] = []
        self.executed: list[str] = []
        self.inserts: list[tuple[str, dict[str, Any]]] = []
        # Statements containing one of these substrings fail with the given message
        self.fail_on: dict[str, str] = {}
        self.exec_sql_missing = False
        self.catalog_error: Exception | None = None
        self.strict = strict
        self.closed = False

    async def exec_sql(self, sql: str) -> None:
        if self.exec_sql_missing:
            raise RuntimeError("function exec_sql(sql text) does not exist")
        for needle, message in self.fail_on.items():
            if needle in sql:
                raise RuntimeError(message)
        self.executed.append(sql)
        for statement in parse_statements(sql):
            self._apply(statement)

    def _apply(self, statement: str) -> None:
        for guard, name in _CREATE_TABLE_RE.findall(statement):
            if name in self.tables and self.strict and not guard:
                raise RuntimeError(f'relation "{name}" already exists')
            self.tables.setdefault(name, [])
        for guard, name in _DROP_TABLE_RE.findall(statement):
            if name not in self.tables and self.strict and not guard:
                raise RuntimeError(f'table "{name}" does not exist')
            self.tables.pop(name, None)
        for guard, name in _CREATE_INDEX_RE.findall(statement):
            if name in self.indexes:
                if self.strict and not guard:
                    raise RuntimeError(f'relation "{name}" already exists')
            else:
                self.indexes.append(name)
        for guard, name in _DROP_INDEX_RE.findall(statement):
            if name in self.indexes:
                self.indexes.remove(name)
            elif self.strict and not guard:
                raise RuntimeError(f'index "{name}" does not exist')

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        return None

    async def list_tables(self, schema: str = "public") -> list[str]:
        if self.catalog_error is not None:
            raise self.catalog_error
        return sorted(self.tables)

    async def list_indexes(self, schema: str = "public") -> list[str]:
        if self.catalog_error is not None:
            raise self.catalog_error
        return list(self.indexes)

    def _rows(self, table: str) -> list[dict[str, Any]]:
        if table not in self.tables:
            raise RuntimeError(f'relation "{table}" does not exist')
        return self.tables[table]

    async def query(
        self, table: str, query_params: str | None = None, select: str = "*"
    ) -> list[dict[str, Any]]:
        rows = list(self._rows(table))
        order: tuple[str, bool] | None = None
        limit: int | None = None
        for part in (query_params or "").split("&"):
            if not part:
                continue
            key, _, value = part.partition("=")
            if key == "order":
                column, _, direction = value.partition(".")
                order = (column, direction == "desc")
            elif key == "limit":
                limit = int(value)
            else:
                op, _, raw = value.partition(".")
                assert op == "eq", f"unsupported filter {part}"
                rows = [r for r in rows if str(r.get(key)) == unquote(raw)]
        if order is not None:
            rows.sort(key=lambda r: str(r.get(order[0]) or ""), reverse=order[1])
        if limit is not None:
            rows = rows[:limit]
        return [dict(r) for r in rows]

    async def insert(
        self, table: str, data: dict[str, Any], return_data: bool = True
    ) -> dict[str, Any]:
        row = {"id": str(uuid4()), "executed_at": datetime.now(UTC).isoformat(), **data}
        self._rows(table).append(row)
        self.inserts.append((table, data))
        return dict(row) if return_data else {}

    async def delete(self, table: str, match: dict[str, Any]) -> None:
        rows = self._rows(table)
        rows[:] = [r for r in rows if any(r.get(k) != v for k, v in match.items())]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_db():
    """An empty in-memory database."""
    return FakeDatabase()


@pytest.fixture
def state_analyzer(fake_db, tmp_path):
    """State analyzer over the fake database with an in-memory cache."""
    return StateAnalyzer(
        db=fake_db,
        project_root=tmp_path,
        store=MemoryStateStore(),
        ttl_seconds=300,
        features=[],
        migrations_table="_db_agent_migrations",
        migration_dirs=("src/lib/migrations", "supabase/migrations", "migrations"),
    )


@pytest.fixture
def executor(fake_db, tmp_path, state_analyzer):
    """Migration executor wired to the fake database."""
    return MigrationExecutor(
        db=fake_db,
        project_root=tmp_path,
        state_analyzer=state_analyzer,
        config=MigrationConfig(),
    )


@pytest.fixture
def write_migration(tmp_path):
    """Write a migration file under ``migrations/`` and return its path."""

    def _write(filename: str, sql: str, directory: str = "migrations") -> Path:
        path = tmp_path / directory / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(sql, encoding="utf-8")
        return path

    return _write
