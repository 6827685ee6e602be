"""Removal of planned operations that the system state shows are already done."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import PurePosixPath

from .state import SystemState

logger = logging.getLogger(__name__)

OPERATION_TYPES = (
    "create_table",
    "create_api",
    "update_component",
    "install_dependency",
    "run_migration",
    "create_types",
    "create_hooks",
)

_TABLE_IN_DESCRIPTION_RE = re.compile(r"table\s+(\w+)", re.IGNORECASE)
_APP_ROUTE_RE = re.compile(r"src/app/api/(.+?)/route\.[jt]s$")
_PAGES_ROUTE_RE = re.compile(r"pages/api/(.+)\.[jt]s$")


@dataclass
class DatabaseOperation:
    """One step of an agent plan."""

    type: str
    description: str
    files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    table: str | None = None

    def table_name(self) -> str | None:
        if self.table:
            return self.table
        match = _TABLE_IN_DESCRIPTION_RE.search(self.description)
        return match.group(1) if match else None


def file_path_to_api_path(file_path: str) -> str:
    """``src/app/api/x/route.ts`` or ``pages/api/x.ts`` to ``/api/x``."""
    normalized = file_path.replace("\\", "/")
    match = _APP_ROUTE_RE.search(normalized) or _PAGES_ROUTE_RE.search(normalized)
    if match is None:
        return file_path
    path = match.group(1)
    if path == "index":
        return "/api"
    return f"/api/{path.removesuffix('/index')}"


def _executed_migrations(state: SystemState) -> set[str]:
    executed = set(state.database.migrations_executed)
    executed.update(m.filename for m in state.migrations.executed)
    return executed


def filter_redundant_operations(
    operations: Sequence[DatabaseOperation],
    state: SystemState,
    installed_dependencies: Iterable[str] = (),
) -> list[DatabaseOperation]:
    """Drop or narrow operations whose effect already exists.

    Dependency installs and migration runs are narrowed to what is still
    missing. The input operations are not modified.
    """
    tables = set(state.database.tables)
    routes = {route.path for route in state.api.routes if route.exists}
    db_components = {c.path for c in state.components.components if c.has_database}
    installed = set(installed_dependencies)
    executed = _executed_migrations(state)

    kept: list[DatabaseOperation] = []
    for operation in operations:
        if operation.type == "create_table":
            table = operation.table_name()
            if table and table in tables:
                logger.info("Skipping table creation for '%s': already exists", table)
                continue
        elif operation.type == "create_api":
            existing = [p for p in map(file_path_to_api_path, operation.files) if p in routes]
            if existing:
                logger.info("Skipping API creation for '%s': already exists", existing[0])
                continue
        elif operation.type == "update_component":
            done = [f for f in operation.files if f in db_components]
            if done:
                logger.info("Skipping component update for '%s': already uses database", done[0])
                continue
        elif operation.type == "install_dependency":
            if operation.dependencies:
                missing = [d for d in operation.dependencies if d not in installed]
                if not missing:
                    logger.info("Skipping dependency installation: all already installed")
                    continue
                operation = replace(operation, dependencies=missing)
        elif operation.type == "run_migration":
            pending = [f for f in operation.files if PurePosixPath(f).name not in executed]
            if not pending:
                logger.info("Skipping migration execution: all migrations already executed")
                continue
            operation = replace(operation, files=pending)
        elif operation.type not in OPERATION_TYPES:
            logger.warning("Unknown operation type: %s", operation.type)
        kept.append(operation)

    skipped = len(operations) - len(kept)
    if skipped:
        logger.info("%d of %d operations skipped as redundant", skipped, len(operations))
    return kept
