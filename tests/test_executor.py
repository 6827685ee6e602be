"""Tests for the migration executor."""

import logging
from dataclasses import FrozenInstanceError

import pytest

from db_agent.errors import (
    InitializationError,
    MigrationNotFoundError,
    RollbackUnavailableError,
)
from db_agent.executor import (
    MigrationResult,
    migration_checksum,
    parse_migration_info,
    statement_preview,
    tracking_table_sql,
)

TRACKING = "_db_agent_migrations"

USERS_SQL = """-- Users table
CREATE TABLE IF NOT EXISTS users (
  id UUID PRIMARY KEY,
  email TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
"""


class TestParseMigrationInfo:
    """Tests for migration filename parsing."""

    def test_timestamp_and_description(self):
        """Timestamp is the first segment, the rest becomes the description."""
        info = parse_migration_info("20240101120000_create_recently_played.sql")
        assert info.timestamp == "20240101120000"
        assert info.description == "create recently played"
        assert info.executed is False

    def test_filename_without_underscore(self):
        """A bare name has no description."""
        info = parse_migration_info("setup.sql")
        assert info.timestamp == "setup"
        assert info.description == ""

    def test_checksum_is_stable(self):
        """Checksums depend only on the filename."""
        assert migration_checksum("a.sql") == migration_checksum("a.sql")
        assert migration_checksum("a.sql") != migration_checksum("b.sql")
        assert len(migration_checksum("a.sql")) == 16


class TestTrackingTable:
    """Tests for the tracking table DDL."""

    def test_schema_columns(self):
        """The DDL declares every tracking column and both indexes."""
        sql = tracking_table_sql(TRACKING)
        assert "id UUID DEFAULT gen_random_uuid() PRIMARY KEY" in sql
        assert "filename TEXT NOT NULL UNIQUE" in sql
        assert "executed_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()" in sql
        assert "rollback_sql TEXT" in sql
        assert "checksum TEXT" in sql
        assert "created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()" in sql
        assert f"idx_migrations_filename ON {TRACKING}(filename)" in sql
        assert f"idx_migrations_executed_at ON {TRACKING}(executed_at)" in sql

    def test_preview_truncates(self):
        """Long statements are flattened and cut."""
        preview = statement_preview("SELECT\n" + "x" * 100)
        assert "\n" not in preview
        assert preview.endswith("...")
        assert len(preview) == 63


class TestInitialize:
    """Tests for MigrationExecutor.initialize."""

    @pytest.mark.asyncio
    async def test_creates_tracking_table(self, executor, fake_db):
        """Initialization runs the tracking table DDL."""
        await executor.initialize()

        assert TRACKING in fake_db.tables
        assert "filename TEXT NOT NULL UNIQUE" in fake_db.executed[0]
        assert executor.exec_sql_available is True

    @pytest.mark.asyncio
    async def test_unreachable_database(self, executor, fake_db):
        """Connection failures raise InitializationError."""
        fake_db.catalog_error = RuntimeError("connection refused")

        with pytest.raises(InitializationError, match="connection refused"):
            await executor.initialize()

    @pytest.mark.asyncio
    async def test_missing_exec_sql_writes_setup_file(self, executor, fake_db, tmp_path):
        """Without exec_sql the executor writes a setup script and degrades."""
        fake_db.exec_sql_missing = True

        await executor.initialize()

        assert executor.exec_sql_available is False
        setup = (tmp_path / "database-setup-functions.sql").read_text()
        assert "CREATE OR REPLACE FUNCTION exec_sql(sql text)" in setup
        assert f"CREATE TABLE IF NOT EXISTS {TRACKING}" in setup

    @pytest.mark.asyncio
    async def test_degraded_execution_fails_with_setup_hint(
        self, executor, fake_db, write_migration
    ):
        """Migrations fail with a pointer to the setup script."""
        fake_db.exec_sql_missing = True
        await executor.initialize()
        path = write_migration("20240101000000_create_users.sql", USERS_SQL)

        result = await executor.execute_migration(path)

        assert result.success is False
        assert "exec_sql function is not installed" in result.error
        assert "database-setup-functions.sql" in result.error

    @pytest.mark.asyncio
    async def test_missing_default_function_is_not_degraded_mode(self, executor, fake_db):
        """An undefined function inside the tracking DDL is a real failure."""
        fake_db.fail_on = {"gen_random_uuid": "function gen_random_uuid() does not exist"}

        with pytest.raises(InitializationError, match="gen_random_uuid"):
            await executor.initialize()

        assert executor.exec_sql_available is True

    @pytest.mark.asyncio
    async def test_execute_requires_initialize(self, executor, write_migration):
        """Executing before initialize() is a usage error."""
        path = write_migration("20240101000000_create_users.sql", USERS_SQL)

        with pytest.raises(InitializationError):
            await executor.execute_migration(path)


class TestExecuteMigration:
    """Tests for single migration execution."""

    @pytest.mark.asyncio
    async def test_success_records_migration(self, executor, fake_db, write_migration):
        """A clean run executes every statement and stores a record."""
        await executor.initialize()
        path = write_migration("20240101000000_create_users.sql", USERS_SQL)

        result = await executor.execute_migration(path)

        assert result.success is True
        assert result.skipped is False
        assert result.statements_executed == 2
        assert result.tables_created == ["users"]
        assert result.rollback_info.can_rollback is True
        assert result.rollback_info.rollback_sql == (
            "DROP INDEX IF EXISTS idx_users_email;\nDROP TABLE IF EXISTS users CASCADE;"
        )
        assert "users" in fake_db.tables

        records = fake_db.tables[TRACKING]
        assert len(records) == 1
        assert records[0]["filename"] == path.name
        assert records[0]["description"] == "create users"
        assert records[0]["checksum"] == migration_checksum(path.name)
        assert records[0]["rollback_sql"] == result.rollback_info.rollback_sql

    @pytest.mark.asyncio
    async def test_already_executed_is_skipped(self, executor, fake_db, write_migration):
        """A recorded filename is skipped without running anything."""
        await executor.initialize()
        path = write_migration("20240101000000_create_users.sql", USERS_SQL)
        fake_db.tables[TRACKING].append({"filename": path.name, "rollback_sql": None})
        executed_before = list(fake_db.executed)

        result = await executor.execute_migration(path)

        assert result.success is True
        assert result.skipped is True
        assert result.migration.executed is True
        assert result.statements_executed == 0
        assert fake_db.executed == executed_before
        assert fake_db.inserts == []

    @pytest.mark.asyncio
    async def test_failing_statement_aborts_file(self, executor, fake_db, write_migration):
        """The first rejected statement stops the file."""
        await executor.initialize()
        fake_db.fail_on = {"broken": 'syntax error at or near ";"'}
        path = write_migration(
            "20240101000000_three_tables.sql",
            "CREATE TABLE IF NOT EXISTS first (id int);\n"
            "CREATE TABLE broken (;\n"
            "CREATE TABLE IF NOT EXISTS third (id int);\n",
        )

        result = await executor.execute_migration(path)

        assert result.success is False
        assert result.statements_executed == 1
        assert result.failed_statement == "CREATE TABLE broken (;"
        assert "SQL execution failed at statement 2" in result.error
        assert "syntax error" in result.error
        assert "first" in fake_db.tables
        assert "third" not in fake_db.tables
        assert fake_db.inserts == []

    @pytest.mark.asyncio
    async def test_missing_file_is_failed_result(self, executor, tmp_path):
        """File errors come back as a failed result, not an exception."""
        await executor.initialize()

        result = await executor.execute_migration(tmp_path / "missing_file.sql")

        assert result.success is False
        assert "missing_file.sql" in result.error

    @pytest.mark.asyncio
    async def test_existing_table_triggers_idempotency_warning(
        self, executor, fake_db, write_migration, caplog
    ):
        """Non-idempotent SQL against existing tables is reported but still runs."""
        await executor.initialize()
        fake_db.tables["users"] = []
        path = write_migration("20240101000000_users.sql", "CREATE TABLE users (id int);")

        with caplog.at_level(logging.INFO, logger="db_agent.executor"):
            result = await executor.execute_migration(path)

        assert result.success is True
        assert "Tables already exist: users" in caplog.text
        assert "Line 1: CREATE TABLE without IF NOT EXISTS" in caplog.text

    @pytest.mark.asyncio
    async def test_verification_error_is_not_fatal(
        self, executor, fake_db, write_migration, caplog
    ):
        """A table probe that errors is logged as unverified."""
        await executor.initialize()
        path = write_migration("20240101000000_create_users.sql", USERS_SQL)
        original_query = fake_db.query

        async def flaky_query(table, query_params=None, select="*"):
            if table == "users":
                raise RuntimeError("statement timeout")
            return await original_query(table, query_params, select)

        fake_db.query = flaky_query

        with caplog.at_level(logging.WARNING, logger="db_agent.executor"):
            result = await executor.execute_migration(path)

        assert result.success is True
        assert "Could not verify table users" in caplog.text

    @pytest.mark.asyncio
    async def test_result_is_frozen(self, executor, write_migration):
        """Results cannot be mutated after creation."""
        await executor.initialize()
        path = write_migration("20240101000000_create_users.sql", USERS_SQL)
        result = await executor.execute_migration(path)

        assert isinstance(result, MigrationResult)
        with pytest.raises(FrozenInstanceError):
            result.success = False


class TestParseMigrationSql:
    """Tests for parse-only analysis."""

    def test_function_body_is_one_statement(self, executor):
        """Dollar-quoted bodies are not split at inner semicolons."""
        sql = (
            "CREATE OR REPLACE FUNCTION touch() RETURNS trigger AS $$\n"
            "BEGIN\n  NEW.updated_at = NOW();\n  RETURN NEW;\nEND;\n$$ LANGUAGE plpgsql;\n"
            "CREATE TABLE IF NOT EXISTS songs (id int);\n"
        )

        parsed = executor.parse_migration_sql(sql)

        assert len(parsed.statements) == 2
        assert parsed.tables_created == ["songs"]
        assert parsed.rollback.sql == (
            "DROP TABLE IF EXISTS songs CASCADE;\nDROP FUNCTION IF EXISTS touch();"
        )

    def test_irreversible_statements_warn(self, executor, caplog):
        """Statements the rollback cannot undo are logged."""
        with caplog.at_level(logging.WARNING, logger="db_agent.executor"):
            parsed = executor.parse_migration_sql("INSERT INTO users (id) VALUES (1);")

        assert parsed.rollback.sql is None
        assert len(parsed.rollback.irreversible) == 1
        assert "Rollback will not undo insert statement" in caplog.text


class TestExecuteMigrations:
    """Tests for batch execution."""

    @pytest.mark.asyncio
    async def test_fail_fast(self, executor, fake_db, write_migration, tmp_path):
        """The batch stops at the first failure and writes a recovery script."""
        await executor.initialize()
        fake_db.fail_on = {"INSERT INTO beta": "permission denied for table beta"}
        a = write_migration(
            "20240101000000_create_alpha.sql", "CREATE TABLE IF NOT EXISTS alpha (id int);"
        )
        b = write_migration(
            "20240102000000_create_beta.sql",
            "CREATE TABLE IF NOT EXISTS beta (id int);\nINSERT INTO beta VALUES (1);",
        )
        c = write_migration(
            "20240103000000_create_gamma.sql", "CREATE TABLE IF NOT EXISTS gamma (id int);"
        )

        results = await executor.execute_migrations([a, b, c])

        assert [r.success for r in results] == [True, False]
        assert results[1].migration.filename == b.name
        assert "gamma" not in fake_db.tables

        fallback = (tmp_path / "database-setup-manual.sql").read_text()
        assert "permission denied for table beta" in fallback
        assert "INSERT INTO beta VALUES (1);" in fallback
        assert "CREATE TABLE IF NOT EXISTS gamma (id int);" in fallback
        assert "CREATE TABLE IF NOT EXISTS alpha" not in fallback

    @pytest.mark.asyncio
    async def test_undefined_function_keeps_database_error(
        self, executor, fake_db, write_migration, tmp_path
    ):
        """A statement calling a missing function reports that function."""
        await executor.initialize()
        fake_db.fail_on = {"uuid_generate_v4": "function uuid_generate_v4() does not exist"}
        path = write_migration(
            "20240101000000_create_plays.sql",
            "CREATE TABLE IF NOT EXISTS plays (id uuid DEFAULT uuid_generate_v4());",
        )

        [result] = await executor.execute_migrations([path])

        assert result.success is False
        assert "function uuid_generate_v4() does not exist" in result.error
        assert "exec_sql function is not installed" not in result.error
        fallback = (tmp_path / "database-setup-manual.sql").read_text()
        assert "function uuid_generate_v4() does not exist" in fallback
        assert "exec_sql function is not installed" not in fallback

    @pytest.mark.asyncio
    async def test_all_succeed(self, executor, write_migration, tmp_path):
        """A clean batch returns one result per file and no recovery script."""
        await executor.initialize()
        a = write_migration("20240101000000_a.sql", "CREATE TABLE IF NOT EXISTS a (id int);")
        b = write_migration("20240102000000_b.sql", "CREATE TABLE IF NOT EXISTS b (id int);")

        results = await executor.execute_migrations([a, b])

        assert [r.success for r in results] == [True, True]
        assert not (tmp_path / "database-setup-manual.sql").exists()

    @pytest.mark.asyncio
    async def test_success_invalidates_state_cache(
        self, executor, state_analyzer, write_migration
    ):
        """The cached snapshot is dropped once a migration has run."""
        await executor.initialize()
        await state_analyzer.get_system_state()
        assert state_analyzer.store.load() is not None

        path = write_migration("20240101000000_a.sql", "CREATE TABLE IF NOT EXISTS a (id int);")
        await executor.execute_migrations([path])

        assert state_analyzer.store.load() is None


class TestRollback:
    """Tests for MigrationExecutor.rollback_migration."""

    @pytest.mark.asyncio
    async def test_round_trip(self, executor, fake_db, write_migration):
        """Rolling back drops the table and deletes the record."""
        await executor.initialize()
        path = write_migration("20240101000000_create_users.sql", USERS_SQL)
        await executor.execute_migration(path)

        assert await executor.rollback_migration(path.name) is True

        assert await fake_db.query(TRACKING, f"filename=eq.{path.name}") == []
        assert "users" not in fake_db.tables
        assert await executor.state_analyzer.table_exists("users") is False

    @pytest.mark.asyncio
    async def test_unknown_migration(self, executor):
        """Rolling back an unrecorded filename raises."""
        await executor.initialize()

        with pytest.raises(MigrationNotFoundError):
            await executor.rollback_migration("20240101000000_nothing.sql")

    @pytest.mark.asyncio
    async def test_no_rollback_sql(self, executor, fake_db):
        """A record without rollback SQL raises RollbackUnavailableError."""
        await executor.initialize()
        fake_db.tables[TRACKING].append(
            {"filename": "20240101000000_seed.sql", "rollback_sql": None}
        )

        with pytest.raises(RollbackUnavailableError, match="No rollback SQL"):
            await executor.rollback_migration("20240101000000_seed.sql")

    @pytest.mark.asyncio
    async def test_rollback_failure_keeps_record(self, executor, fake_db, write_migration):
        """A rejected rollback script returns False and keeps the record."""
        await executor.initialize()
        path = write_migration("20240101000000_create_users.sql", USERS_SQL)
        await executor.execute_migration(path)
        fake_db.fail_on = {"DROP TABLE": "cannot drop table users"}

        assert await executor.rollback_migration(path.name) is False
        assert len(fake_db.tables[TRACKING]) == 1
        assert "users" in fake_db.tables


class TestSchemaVerification:
    """Tests for verify_database_schema."""

    @pytest.mark.asyncio
    async def test_catalog_comparison(self, executor, fake_db):
        """Missing and extra tables are reported; internal tables are ignored."""
        await executor.initialize()
        fake_db.tables.update({"users": [], "orders": [], "_internal": []})

        report = await executor.verify_database_schema(["users", "playlists"])

        assert report.valid is False
        assert report.missing == ["playlists"]
        assert report.extra == ["orders"]

    @pytest.mark.asyncio
    async def test_probe_fallback(self, executor, fake_db):
        """Without the catalog each expected table is probed."""
        await executor.initialize()
        fake_db.tables["users"] = []
        fake_db.catalog_error = RuntimeError("permission denied for schema information_schema")

        report = await executor.verify_database_schema(["users", "playlists"])

        assert report.valid is False
        assert report.missing == ["playlists"]
        assert report.extra == []

    @pytest.mark.asyncio
    async def test_all_present(self, executor, fake_db):
        """A schema with every expected table is valid."""
        await executor.initialize()
        fake_db.tables["users"] = []

        report = await executor.verify_database_schema(["users"])

        assert report.valid is True
        assert report.missing == []


class TestMigrationStatus:
    """Tests for status and discovery."""

    @pytest.mark.asyncio
    async def test_executed_and_pending(self, executor, write_migration, tmp_path):
        """Executed records and pending files across candidate directories."""
        await executor.initialize()
        a = write_migration("20240101_a.sql", "CREATE TABLE IF NOT EXISTS a (id int);")
        write_migration("20240102_b.sql", "SELECT 1;", directory="supabase/migrations")
        write_migration("20240102_b.sql", "SELECT 2;", directory="src/lib/migrations")
        write_migration("20240103_c.sql", "SELECT 3;")
        await executor.execute_migration(a)

        status = await executor.get_migration_status()

        assert [m.filename for m in status.executed] == ["20240101_a.sql"]
        assert status.executed[0].filepath == a
        assert status.executed[0].rollback_sql == "DROP TABLE IF EXISTS a CASCADE;"
        assert status.pending == ["20240102_b.sql", "20240103_c.sql"]

        paths = await executor.pending_migration_paths()
        assert paths[0] == tmp_path / "src/lib/migrations/20240102_b.sql"

    @pytest.mark.asyncio
    async def test_status_without_tracking_table(self, executor):
        """An unreadable tracking table yields an empty status."""
        status = await executor.get_migration_status()

        assert status.executed == []
        assert status.pending == []

    def test_find_migration_file(self, executor, write_migration):
        """Files are looked up across candidate directories."""
        path = write_migration("20240101_a.sql", "SELECT 1;", directory="supabase/migrations")

        assert executor.find_migration_file("20240101_a.sql") == path
        assert executor.find_migration_file("20240101_missing.sql") is None
