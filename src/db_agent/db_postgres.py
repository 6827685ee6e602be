"""Direct PostgreSQL client using asyncpg.

Alternative database backend for self-hosted PostgreSQL or a local Supabase
database reached over its Postgres port.
Requires: pip install db-agent[postgres]

Scripts run directly on a pooled connection, so no ``exec_sql`` helper
function has to be installed. Table reads accept the same PostgREST-style
filter strings the Supabase client sends.
"""

import re
from typing import Any
from urllib.parse import unquote
from uuid import UUID

import asyncpg  # noqa: I001

from .config import PostgresConfig

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_COMPARISONS = {
    "eq": "=",
    "neq": "<>",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}


def _coerce_filter_value(val: str) -> Any:
    """Coerce a PostgREST filter string value to the appropriate Python type.

    asyncpg requires typed parameters, so a UUID or integer column cannot be
    compared against a plain string.
    """
    if val.lower() in ("true", "false"):
        return val.lower() == "true"
    if _UUID_RE.match(val):
        return UUID(val)
    try:
        return int(val)
    except ValueError:
        pass
    return val


def _validate_identifier(identifier: str, *, allow_qualified: bool = False) -> str:
    """Validate SQL identifiers used for dynamic SQL construction."""
    parts = identifier.split(".") if allow_qualified else [identifier]
    if not parts or any(not _IDENT_RE.match(part) for part in parts):
        raise ValueError(f"Unsafe identifier: {identifier}")
    return identifier


def _validate_select_clause(select: str) -> str:
    if select.strip() == "*":
        return "*"
    columns = [col.strip() for col in select.split(",")]
    for col in columns:
        _validate_identifier(col, allow_qualified=True)
    return ", ".join(columns)


def translate_filters(query_params: str | None) -> tuple[str, list[Any]]:
    """Translate a PostgREST query string into SQL clauses and parameters.

    Returns the text appended after ``FROM table`` (WHERE, ORDER BY, LIMIT)
    and the positional parameter values.
    """
    where_clauses: list[str] = []
    order_clause = ""
    limit_clause = ""
    values: list[Any] = []

    for part in (query_params or "").split("&"):
        if not part:
            continue
        if part.startswith("order="):
            order_parts = part[len("order="):].split(".")
            col = _validate_identifier(order_parts[0], allow_qualified=True)
            direction = "DESC" if order_parts[1:2] == ["desc"] else "ASC"
            order_clause = f" ORDER BY {col} {direction}"
            continue
        if part.startswith("limit="):
            limit_clause = f" LIMIT {int(part[len('limit='):])}"
            continue

        col, _, expr = part.partition("=")
        op, _, raw = expr.partition(".")
        _validate_identifier(col, allow_qualified=True)
        if op == "in":
            in_values = [unquote(v) for v in raw.strip("()").replace('"', "").split(",")]
            start = len(values) + 1
            placeholders = ", ".join(f"${start + i}" for i in range(len(in_values)))
            where_clauses.append(f"{col} IN ({placeholders})")
            values.extend(_coerce_filter_value(v) for v in in_values)
        elif op == "is" and raw == "null":
            where_clauses.append(f"{col} IS NULL")
        elif op in _COMPARISONS:
            values.append(_coerce_filter_value(unquote(raw)))
            where_clauses.append(f"{col} {_COMPARISONS[op]} ${len(values)}")
        else:
            raise ValueError(f"Unsupported filter: {part}")

    where = f" WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
    return f"{where}{order_clause}{limit_clause}", values


class DirectPostgresClient:
    """Direct PostgreSQL client using asyncpg connection pool.

    Implements the DatabaseClient protocol with plain SQL.
    """

    def __init__(self, config: PostgresConfig | None = None):
        self._config = config or PostgresConfig()
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self._config.dsn,
                min_size=self._config.pool_min,
                max_size=self._config.pool_max,
            )
        return self._pool

    async def exec_sql(self, sql: str) -> None:
        """Execute a SQL script as one simple-protocol call."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(sql)

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        """Call a PostgreSQL function.

        Translates to: SELECT function_name(p1 := $1, p2 := $2, ...)
        """
        _validate_identifier(function_name, allow_qualified=True)
        for name in params:
            _validate_identifier(name)
        pool = await self._get_pool()

        param_clause = ", ".join(f"{name} := ${i + 1}" for i, name in enumerate(params))
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {function_name}({param_clause})", *params.values()
            )
            return None if row is None else row[0]

    async def list_tables(self, schema: str = "public") -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = $1 AND table_type = 'BASE TABLE' "
                "ORDER BY table_name",
                schema,
            )
        return [row["table_name"] for row in rows]

    async def list_indexes(self, schema: str = "public") -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT indexname FROM pg_indexes WHERE schemaname = $1 ORDER BY indexname",
                schema,
            )
        return [row["indexname"] for row in rows]

    async def query(
        self,
        table: str,
        query_params: str | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        """Query a table with optional PostgREST-style filters."""
        pool = await self._get_pool()
        clauses, values = translate_filters(query_params)
        safe_select = _validate_select_clause(select)
        safe_table = _validate_identifier(table, allow_qualified=True)

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {safe_select} FROM {safe_table}{clauses}", *values
            )
            return [dict(row) for row in rows]

    async def insert(
        self,
        table: str,
        data: dict[str, Any],
        return_data: bool = True,
    ) -> dict[str, Any]:
        """Insert a row into a table."""
        pool = await self._get_pool()
        _validate_identifier(table, allow_qualified=True)
        columns = [_validate_identifier(col) for col in data]
        placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
        returning = " RETURNING *" if return_data else ""
        query = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({placeholders}){returning}"
        )

        async with pool.acquire() as conn:
            if return_data:
                row = await conn.fetchrow(query, *data.values())
                return dict(row) if row else {}
            await conn.execute(query, *data.values())
            return {}

    async def delete(
        self,
        table: str,
        match: dict[str, Any],
    ) -> None:
        """Delete matching rows from a table."""
        if not match:
            raise ValueError("Refusing to delete without a match condition")
        pool = await self._get_pool()
        _validate_identifier(table, allow_qualified=True)

        where_parts = [
            f"{_validate_identifier(col)} = ${idx}"
            for idx, col in enumerate(match, 1)
        ]
        query = f"DELETE FROM {table} WHERE {' AND '.join(where_parts)}"

        async with pool.acquire() as conn:
            await conn.execute(query, *match.values())

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
