"""Exception hierarchy for the migration core."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


class DbAgentError(Exception):
    """Base class for database agent errors."""

    pass


class InitializationError(DbAgentError):
    """Raised when the executor cannot reach or prepare the database."""

    pass


@dataclass(eq=False)
class ExecSqlUnavailableError(DbAgentError):
    """Raised when the database exposes no execute-arbitrary-SQL call."""

    message: str = "exec_sql function is not installed"
    setup_file: Path | None = None

    def __str__(self) -> str:
        if self.setup_file is not None:
            return f"{self.message} (manual setup written to {self.setup_file})"
        return self.message


class MigrationNotFoundError(DbAgentError):
    pass


class RollbackUnavailableError(DbAgentError):
    """Raised when a migration record has no stored rollback SQL."""

    pass


@dataclass(eq=False)
class StatementExecutionError(DbAgentError):
    """A single statement of a migration was rejected by the database."""

    message: str
    index: int
    statement: str

    def __str__(self) -> str:
        return (
            f"SQL execution failed at statement {self.index + 1}: {self.message}\n"
            f"Statement: {self.statement}"
        )
