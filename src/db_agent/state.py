"""System state snapshots and their time-bounded cache.

A ``SystemState`` records what already exists: database tables and indexes,
executed and pending migrations, API routes, components and which known
features are fully implemented. Building one hits the database and walks
the project tree, so snapshots are cached through a ``StateStore`` for
``ttl_seconds`` (5 minutes by default).

Stores:
- MemoryStateStore: process-local, used in tests
- FileStateStore: JSON file in the project root, written atomically

A snapshot is built completely before it is saved, and an unreadable cache
is treated as a miss. Correctness-critical checks should use
``StateAnalyzer.table_exists`` which always asks the live database.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml

from .config import StateCacheConfig, get_config
from .db import DatabaseClient, get_db, is_missing_relation
from .project_scan import (
    ApiRoute,
    ComponentInfo,
    api_route_exists,
    scan_api_routes,
    scan_components,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ApiRoute",
    "ApiState",
    "CachedState",
    "ComponentInfo",
    "ComponentState",
    "DatabaseState",
    "ExecutedMigration",
    "FeaturePattern",
    "FeatureStatus",
    "FileStateStore",
    "MemoryStateStore",
    "MigrationState",
    "StateAnalyzer",
    "StateStore",
    "SystemState",
    "create_state_store",
    "load_feature_patterns",
]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Snapshot model
# ---------------------------------------------------------------------------


@dataclass
class DatabaseState:
    tables: list[str] = field(default_factory=list)
    indexes: list[str] = field(default_factory=list)
    functions: list[str] = field(default_factory=list)
    policies: list[str] = field(default_factory=list)
    migrations_executed: list[str] = field(default_factory=list)
    last_checked: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": list(self.tables),
            "indexes": list(self.indexes),
            "functions": list(self.functions),
            "policies": list(self.policies),
            "migrations_executed": list(self.migrations_executed),
            "last_checked": _iso(self.last_checked),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DatabaseState:
        return cls(
            tables=list(data.get("tables", [])),
            indexes=list(data.get("indexes", [])),
            functions=list(data.get("functions", [])),
            policies=list(data.get("policies", [])),
            migrations_executed=list(data.get("migrations_executed", [])),
            last_checked=_parse_iso(data.get("last_checked")),
        )


@dataclass
class ApiState:
    routes: list[ApiRoute] = field(default_factory=list)
    last_checked: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "routes": [route.to_dict() for route in self.routes],
            "last_checked": _iso(self.last_checked),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApiState:
        return cls(
            routes=[ApiRoute.from_dict(r) for r in data.get("routes", [])],
            last_checked=_parse_iso(data.get("last_checked")),
        )


@dataclass
class ComponentState:
    components: list[ComponentInfo] = field(default_factory=list)
    last_checked: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "components": [c.to_dict() for c in self.components],
            "last_checked": _iso(self.last_checked),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComponentState:
        return cls(
            components=[ComponentInfo.from_dict(c) for c in data.get("components", [])],
            last_checked=_parse_iso(data.get("last_checked")),
        )


@dataclass
class ExecutedMigration:
    filename: str
    description: str = ""
    executed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "description": self.description,
            "executed_at": _iso(self.executed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutedMigration:
        return cls(
            filename=data["filename"],
            description=data.get("description") or "",
            executed_at=_parse_iso(data.get("executed_at")),
        )


@dataclass
class MigrationState:
    executed: list[ExecutedMigration] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    last_checked: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "executed": [m.to_dict() for m in self.executed],
            "pending": list(self.pending),
            "last_checked": _iso(self.last_checked),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationState:
        return cls(
            executed=[ExecutedMigration.from_dict(m) for m in data.get("executed", [])],
            pending=list(data.get("pending", [])),
            last_checked=_parse_iso(data.get("last_checked")),
        )


@dataclass
class FeatureStatus:
    implemented: bool
    tables: list[str] = field(default_factory=list)
    apis: list[str] = field(default_factory=list)
    components: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "implemented": self.implemented,
            "tables": list(self.tables),
            "apis": list(self.apis),
            "components": list(self.components),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureStatus:
        return cls(
            implemented=bool(data.get("implemented", False)),
            tables=list(data.get("tables", [])),
            apis=list(data.get("apis", [])),
            components=list(data.get("components", [])),
        )


@dataclass
class SystemState:
    """Point-in-time view of what the database and project already contain."""

    database: DatabaseState = field(default_factory=DatabaseState)
    api: ApiState = field(default_factory=ApiState)
    components: ComponentState = field(default_factory=ComponentState)
    migrations: MigrationState = field(default_factory=MigrationState)
    features: dict[str, FeatureStatus] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "database": self.database.to_dict(),
            "api": self.api.to_dict(),
            "components": self.components.to_dict(),
            "migrations": self.migrations.to_dict(),
            "features": {name: f.to_dict() for name, f in self.features.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemState:
        return cls(
            database=DatabaseState.from_dict(data.get("database", {})),
            api=ApiState.from_dict(data.get("api", {})),
            components=ComponentState.from_dict(data.get("components", {})),
            migrations=MigrationState.from_dict(data.get("migrations", {})),
            features={
                name: FeatureStatus.from_dict(f)
                for name, f in data.get("features", {}).items()
            },
        )


@dataclass
class CachedState:
    state: SystemState
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "state": self.state.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedState:
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return cls(state=SystemState.from_dict(data["state"]), timestamp=timestamp)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@runtime_checkable
class StateStore(Protocol):
    """Persistence for the most recent snapshot."""

    def load(self) -> CachedState | None:
        """Return the stored snapshot, or None when absent or unreadable."""
        ...

    def save(self, cached: CachedState) -> None:
        ...

    def invalidate(self) -> None:
        ...


class MemoryStateStore:
    """Keeps the serialized snapshot in memory."""

    def __init__(self) -> None:
        self._payload: dict[str, Any] | None = None

    def load(self) -> CachedState | None:
        if self._payload is None:
            return None
        return CachedState.from_dict(self._payload)

    def save(self, cached: CachedState) -> None:
        self._payload = cached.to_dict()

    def invalidate(self) -> None:
        self._payload = None


class FileStateStore:
    """JSON snapshot file, replaced atomically on every save."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> CachedState | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return CachedState.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.info("Ignoring unreadable state cache %s: %s", self.path, e)
            return None

    def save(self, cached: CachedState) -> None:
        payload = json.dumps(cached.to_dict(), indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.warning("Could not cache state: %s", e)

    def invalidate(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove state cache %s: %s", self.path, e)


def create_state_store(
    config: StateCacheConfig | None = None,
    project_root: Path | None = None,
) -> StateStore:
    """Factory: returns the store selected by STATE_CACHE_BACKEND."""
    if config is None:
        config = get_config().state_cache
    if config.backend == "memory":
        return MemoryStateStore()
    elif config.backend == "file":
        root = project_root if project_root is not None else get_config().project.root
        return FileStateStore(root / config.cache_file)
    else:
        raise ValueError(f"Unknown state cache backend: {config.backend}")


# ---------------------------------------------------------------------------
# Feature registry
# ---------------------------------------------------------------------------


@dataclass
class FeaturePattern:
    """A product feature backed by one table and one API route."""

    name: str
    table: str
    api: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeaturePattern:
        return cls(name=data["name"], table=data["table"], api=data["api"])


DEFAULT_FEATURE_PATTERNS: list[dict[str, str]] = [
    {"name": "recently_played", "table": "recently_played", "api": "/api/recently-played"},
    {"name": "made_for_you", "table": "made_for_you", "api": "/api/made-for-you"},
    {"name": "popular_albums", "table": "popular_albums", "api": "/api/popular-albums"},
    {"name": "user_playlists", "table": "user_playlists", "api": "/api/playlists"},
    {"name": "search_functionality", "table": "search_history", "api": "/api/search"},
]


def load_feature_patterns(path: Path | None = None) -> list[FeaturePattern]:
    """Load feature patterns from YAML, falling back to the built-in set.

    The file holds either a list of ``{name, table, api}`` mappings or a
    mapping with a ``features`` key containing that list.
    """
    if path is None or not path.is_file():
        return [FeaturePattern.from_dict(p) for p in DEFAULT_FEATURE_PATTERNS]

    with open(path) as f:
        raw = yaml.safe_load(f)

    entries = raw.get("features") if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise ValueError(f"{path}: expected a list of features")
    try:
        return [FeaturePattern.from_dict(entry) for entry in entries]
    except (KeyError, TypeError) as e:
        raise ValueError(f"{path}: invalid feature entry: {e}") from e


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StateAnalyzer:
    """Builds and caches ``SystemState`` snapshots."""

    def __init__(
        self,
        db: DatabaseClient | None = None,
        project_root: Path | None = None,
        store: StateStore | None = None,
        ttl_seconds: float | None = None,
        features: Sequence[FeaturePattern] | None = None,
        clock: Callable[[], datetime] | None = None,
        migrations_table: str | None = None,
        migration_dirs: Sequence[str] | None = None,
    ):
        self._db = db
        self._project_root = project_root
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._features = list(features) if features is not None else None
        self._clock = clock or _utcnow
        self._migrations_table = migrations_table
        self._migration_dirs = tuple(migration_dirs) if migration_dirs is not None else None

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
    def store(self) -> StateStore:
        if self._store is None:
            self._store = create_state_store(project_root=self.project_root)
        return self._store

    @property
    def ttl_seconds(self) -> float:
        if self._ttl_seconds is None:
            self._ttl_seconds = get_config().state_cache.ttl_seconds
        return self._ttl_seconds

    @property
    def features(self) -> list[FeaturePattern]:
        if self._features is None:
            config = get_config().project
            self._features = load_feature_patterns(self.project_root / config.features_file)
        return self._features

    @property
    def migrations_table(self) -> str:
        if self._migrations_table is None:
            self._migrations_table = get_config().migrations.table
        return self._migrations_table

    @property
    def migration_dirs(self) -> tuple[str, ...]:
        if self._migration_dirs is None:
            self._migration_dirs = get_config().migrations.directories
        return self._migration_dirs

    async def get_system_state(self, force_refresh: bool = False) -> SystemState:
        """Return the cached snapshot while fresh, else build and cache a new one."""
        if not force_refresh:
            cached = self._load_fresh()
            if cached is not None:
                logger.debug("Loaded state from cache")
                return cached

        logger.info("Analyzing system state...")
        executed = await self._fetch_executed_migrations()
        database = await self._analyze_database(executed)
        state = SystemState(
            database=database,
            api=ApiState(routes=scan_api_routes(self.project_root), last_checked=self._clock()),
            components=ComponentState(
                components=scan_components(self.project_root), last_checked=self._clock()
            ),
            migrations=self._analyze_migrations(executed),
            features=await self._analyze_features(database),
        )
        self.store.save(CachedState(state=state, timestamp=self._clock()))
        logger.info(
            "System state: %d tables, %d routes, %d components, %d migrations executed",
            len(state.database.tables),
            len(state.api.routes),
            len(state.components.components),
            len(state.migrations.executed),
        )
        return state

    def invalidate(self) -> None:
        """Drop the cached snapshot so the next read rebuilds it."""
        self.store.invalidate()

    def _load_fresh(self) -> SystemState | None:
        try:
            cached = self.store.load()
        except Exception as e:
            logger.warning("State cache unavailable: %s", e)
            return None
        if cached is None:
            return None
        age = (self._clock() - cached.timestamp).total_seconds()
        if age < self.ttl_seconds:
            return cached.state
        return None

    async def _fetch_executed_migrations(self) -> list[ExecutedMigration] | None:
        try:
            rows = await self.db.query(
                self.migrations_table,
                "order=executed_at.desc",
                select="filename,description,executed_at",
            )
        except Exception as e:
            logger.warning("Could not read executed migrations: %s", e)
            return None
        executed = []
        for row in rows:
            raw_at = row.get("executed_at")
            if isinstance(raw_at, str):
                raw_at = datetime.fromisoformat(raw_at)
            executed.append(
                ExecutedMigration(
                    filename=row["filename"],
                    description=row.get("description") or "",
                    executed_at=raw_at,
                )
            )
        return executed

    async def _analyze_database(
        self, executed: list[ExecutedMigration] | None
    ) -> DatabaseState:
        state = DatabaseState(last_checked=self._clock())
        try:
            state.tables = await self.db.list_tables()
        except Exception as e:
            logger.warning("Database state analysis error: %s", e)
            return state
        try:
            state.indexes = await self.db.list_indexes()
        except Exception as e:
            logger.warning("Could not list indexes: %s", e)
        state.migrations_executed = [m.filename for m in executed or []]
        return state

    def _analyze_migrations(self, executed: list[ExecutedMigration] | None) -> MigrationState:
        state = MigrationState(executed=list(executed or []), last_checked=self._clock())
        done = {m.filename for m in state.executed}
        for directory in self.migration_dirs:
            base = self.project_root / directory
            if not base.is_dir():
                continue
            for path in sorted(base.glob("*.sql")):
                if path.name not in done and path.name not in state.pending:
                    state.pending.append(path.name)
        return state

    async def _analyze_features(self, database: DatabaseState) -> dict[str, FeatureStatus]:
        features: dict[str, FeatureStatus] = {}
        tables = set(database.tables)
        for pattern in self.features:
            if tables:
                has_table = pattern.table in tables
            else:
                has_table = await self.table_exists(pattern.table)
            implemented = has_table and api_route_exists(self.project_root, pattern.api)
            features[pattern.name] = FeatureStatus(
                implemented=implemented,
                tables=[pattern.table] if implemented else [],
                apis=[pattern.api] if implemented else [],
            )
        return features

    async def table_exists(self, table: str) -> bool:
        """Ask the live database whether ``table`` can be queried."""
        try:
            await self.db.query(table, "limit=1")
            return True
        except Exception as e:
            if not is_missing_relation(e):
                logger.warning("Could not check table %s: %s", table, e)
            return False

    async def is_table_implemented(self, table: str) -> bool:
        state = await self.get_system_state()
        return table in state.database.tables

    async def is_api_implemented(self, api_path: str) -> bool:
        state = await self.get_system_state()
        return any(route.path == api_path and route.exists for route in state.api.routes)

    async def is_feature_implemented(self, name: str) -> bool:
        state = await self.get_system_state()
        feature = state.features.get(name)
        return feature.implemented if feature else False

    async def implemented_tables(self) -> list[str]:
        state = await self.get_system_state()
        return list(state.database.tables)

    async def implemented_apis(self) -> list[str]:
        state = await self.get_system_state()
        return [route.path for route in state.api.routes if route.exists]
