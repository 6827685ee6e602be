"""Database client abstraction for the migration core.

Provides a DatabaseClient protocol with two implementations:
- SupabaseClient: PostgREST HTTP via httpx (default, zero-config with Supabase)
- DirectPostgresClient: asyncpg for direct PostgreSQL connections (self-hosted)

The migration core only needs two remote capabilities beyond plain table
reads and writes: executing an arbitrary SQL script (``exec_sql``) and
introspecting the schema catalog (``list_tables`` / ``list_indexes``).
On Supabase both go through helper functions installed once from
``SETUP_FUNCTIONS_SQL``.

Usage:
    from db_agent.db import get_db, DatabaseClient

    # Production: uses factory based on DB_BACKEND env var
    db = get_db()

    # Testing: inject a fake
    executor = MigrationExecutor(db=fake_client)
"""

from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from .config import SupabaseConfig, get_config

SETUP_FUNCTIONS_SQL = """-- Helper functions for database agent migration execution
-- Run this once in your Supabase SQL editor to enable automatic migrations

-- Execute arbitrary SQL (requires the service role key)
CREATE OR REPLACE FUNCTION exec_sql(sql text)
RETURNS void
LANGUAGE plpgsql
SECURITY DEFINER
AS $$
BEGIN
  EXECUTE sql;
END;
$$;

-- List base tables in the public schema
CREATE OR REPLACE FUNCTION get_public_tables()
RETURNS TABLE(table_name text)
LANGUAGE plpgsql
SECURITY DEFINER
AS $$
BEGIN
  RETURN QUERY
  SELECT t.table_name::text
  FROM information_schema.tables t
  WHERE t.table_schema = 'public'
    AND t.table_type = 'BASE TABLE'
  ORDER BY t.table_name;
END;
$$;

-- List indexes in the public schema
CREATE OR REPLACE FUNCTION get_public_indexes()
RETURNS TABLE(index_name text, table_name text)
LANGUAGE plpgsql
SECURITY DEFINER
AS $$
BEGIN
  RETURN QUERY
  SELECT i.indexname::text, i.tablename::text
  FROM pg_indexes i
  WHERE i.schemaname = 'public'
  ORDER BY i.indexname;
END;
$$;

-- Check whether a table exists
CREATE OR REPLACE FUNCTION table_exists(table_name text)
RETURNS boolean
LANGUAGE plpgsql
SECURITY DEFINER
AS $$
BEGIN
  RETURN EXISTS (
    SELECT 1
    FROM information_schema.tables
    WHERE table_schema = 'public'
      AND table_name = $1
  );
END;
$$;
"""

_MISSING_RELATION_MARKERS = (
    "does not exist",
    "42p01",
    "pgrst205",
    "could not find the table",
)


def eq_filter(column: str, value: Any) -> str:
    """Build a PostgREST ``column=eq.value`` filter with the value percent-encoded."""
    return f"{column}=eq.{quote(str(value), safe='')}"


def is_missing_function(exc: BaseException, name: str | None = None) -> bool:
    """True when an RPC failed because the SQL function is not installed.

    With ``name`` given, an undefined-function error (SQLSTATE 42883) only
    counts when it mentions that function. A statement run through
    ``exec_sql`` that calls some other missing function is a failure of the
    statement, not a missing ``exec_sql``.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        body = exc.response.text.lower()
        if "pgrst202" in body or "could not find the function" in body:
            return True
        if exc.response.status_code != 404:
            return False
        return name is None or "42883" not in body or name.lower() in body
    message = str(exc).lower()
    if "function" not in message or "does not exist" not in message:
        return False
    return name is None or name.lower() in message


def is_missing_relation(exc: BaseException) -> bool:
    """True when a query failed because the table does not exist."""
    if isinstance(exc, httpx.HTTPStatusError):
        body = exc.response.text.lower()
        if any(marker in body for marker in _MISSING_RELATION_MARKERS):
            return True
        return exc.response.status_code == 404
    message = str(exc).lower()
    return any(marker in message for marker in _MISSING_RELATION_MARKERS)


@runtime_checkable
class DatabaseClient(Protocol):
    """Protocol for database backends.

    All implementations must support PostgreSQL-compatible operations.
    The executor and state analyzer depend on this protocol, not on a
    specific implementation.
    """

    async def exec_sql(self, sql: str) -> None:
        """Execute an arbitrary SQL script."""
        ...

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        """Call a stored PostgreSQL function."""
        ...

    async def list_tables(self, schema: str = "public") -> list[str]:
        """Return the base tables of a schema."""
        ...

    async def list_indexes(self, schema: str = "public") -> list[str]:
        """Return the index names of a schema."""
        ...

    async def query(
        self,
        table: str,
        query_params: str | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        """Query a table with optional filters."""
        ...

    async def insert(
        self,
        table: str,
        data: dict[str, Any],
        return_data: bool = True,
    ) -> dict[str, Any]:
        """Insert a row."""
        ...

    async def delete(self, table: str, match: dict[str, Any]) -> None:
        """Delete matching rows."""
        ...

    async def close(self) -> None:
        """Close the connection."""
        ...


class SupabaseClient:
    """Async Supabase client for migration operations.

    Uses httpx to communicate with Supabase's PostgREST API.
    This is the default backend (DB_BACKEND=supabase).
    """

    def __init__(self, config: SupabaseConfig | None = None):
        self._config = config
        self._client: httpx.AsyncClient | None = None

    @property
    def config(self) -> SupabaseConfig:
        if self._config is None:
            supabase = get_config().supabase
            if supabase is None:
                raise ValueError("Supabase is not configured")
            self._config = supabase
        return self._config

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    def _headers(self) -> dict[str, str]:
        """Get auth headers for Supabase requests."""
        return {
            "apikey": self.config.service_key,
            "Authorization": f"Bearer {self.config.service_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.config.url}{self.config.rest_prefix}/{path}"

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        """Call a Supabase RPC function.

        Args:
            function_name: Name of the PostgreSQL function
            params: Parameters to pass to the function

        Returns:
            The function result, or None for functions returning void

        Raises:
            httpx.HTTPStatusError: On API errors
        """
        response = await self.client.post(
            self._url(f"rpc/{function_name}"),
            headers=self._headers(),
            json=params,
        )
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    async def exec_sql(self, sql: str) -> None:
        """Run a SQL script through the ``exec_sql`` helper function."""
        await self.rpc("exec_sql", {"sql": sql})

    async def list_tables(self, schema: str = "public") -> list[str]:
        """List tables via the ``get_public_tables`` helper function.

        Only the public schema is exposed by the helper.
        """
        if schema != "public":
            raise ValueError("Supabase catalog helpers only cover the public schema")
        rows = await self.rpc("get_public_tables", {}) or []
        return [row["table_name"] if isinstance(row, dict) else str(row) for row in rows]

    async def list_indexes(self, schema: str = "public") -> list[str]:
        """List indexes via the ``get_public_indexes`` helper function."""
        if schema != "public":
            raise ValueError("Supabase catalog helpers only cover the public schema")
        rows = await self.rpc("get_public_indexes", {}) or []
        return [row["index_name"] if isinstance(row, dict) else str(row) for row in rows]

    async def query(
        self,
        table: str,
        query_params: str | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        """Query a table with optional filters.

        Args:
            table: Table name
            query_params: PostgREST query string (e.g., "filename=eq.x&order=executed_at.asc")
            select: Columns to select (default: "*")

        Returns:
            List of matching rows
        """
        url = f"{self._url(table)}?select={select}"
        if query_params:
            url += f"&{query_params}"

        response = await self.client.get(url, headers=self._headers())
        response.raise_for_status()
        return response.json()  # type: ignore[no-any-return]

    async def insert(
        self,
        table: str,
        data: dict[str, Any],
        return_data: bool = True,
    ) -> dict[str, Any]:
        """Insert a row into a table.

        Args:
            table: Table name
            data: Row data
            return_data: Whether to return the inserted row

        Returns:
            The inserted row (if return_data=True) or empty dict
        """
        headers = self._headers()
        if return_data:
            headers["Prefer"] = "return=representation"

        response = await self.client.post(
            self._url(table),
            headers=headers,
            json=data,
        )
        response.raise_for_status()

        if not return_data or not response.content:
            return {}
        result = response.json()
        return result[0] if result else {}

    async def delete(
        self,
        table: str,
        match: dict[str, Any],
    ) -> None:
        """Delete matching rows from a table.

        Args:
            table: Table name
            match: Conditions for matching rows (column=value)
        """
        query_string = "&".join(eq_filter(k, v) for k, v in match.items())

        response = await self.client.delete(
            f"{self._url(table)}?{query_string}",
            headers=self._headers(),
        )
        response.raise_for_status()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_db_client() -> DatabaseClient:
    """Factory: returns the appropriate DatabaseClient based on config.

    Uses DB_BACKEND env var (default: "supabase").
    """
    config = get_config()
    backend = config.database.backend

    if backend == "supabase":
        return SupabaseClient(config.supabase)
    elif backend == "postgres":
        try:
            from .db_postgres import DirectPostgresClient
        except ImportError as e:
            raise ImportError(
                "asyncpg is required for DB_BACKEND=postgres. "
                "Install with: pip install db-agent[postgres]"
            ) from e
        return DirectPostgresClient(config.database.postgres)
    else:
        raise ValueError(f"Unknown database backend: {backend}")


# Global client instance (lazy-loaded)
_db: DatabaseClient | None = None


def get_db() -> DatabaseClient:
    """Get the global database client instance."""
    global _db
    if _db is None:
        _db = create_db_client()
    return _db


async def close_db() -> None:
    """Close the global database client."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None


def reset_db() -> None:
    """Reset the global database client (for testing)."""
    global _db
    _db = None
