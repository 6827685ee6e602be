"""File-system scanning of the analyzed web project.

Only the two signals the state cache needs are extracted:

- API routes, from Next.js app-router ``route.ts`` / ``route.js`` files
  under ``src/app/api`` and pages-router handlers under ``pages/api``
- components under ``src/components`` / ``components`` (``.tsx`` / ``.jsx``)
  and whether their source text shows database usage
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

APP_API_DIR = "src/app/api"
PAGES_API_DIR = "pages/api"
COMPONENT_DIRS = ("src/components", "components")

ROUTE_FILES = ("route.ts", "route.js")
PAGE_SUFFIXES = (".ts", ".js")
COMPONENT_SUFFIXES = (".tsx", ".jsx")

_HTTP_METHOD_RE = re.compile(
    r"export\s+(?:async\s+)?function\s+(GET|POST|PUT|DELETE|PATCH|HEAD|OPTIONS)\b"
)
DATABASE_INDICATORS = ("supabase", "from(", "select(", "insert(", "update(", "delete(")
_HARDCODED_PATTERNS = (
    re.compile(r"const\s+\w+\s*=\s*\[[\s\S]*?\]"),
    re.compile(r"const\s+\w+\s*=\s*\{[\s\S]*?\}"),
)


@dataclass
class ApiRoute:
    path: str
    methods: list[str] = field(default_factory=list)
    exists: bool = True
    last_modified: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "methods": list(self.methods),
            "exists": self.exists,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApiRoute:
        modified = data.get("last_modified")
        return cls(
            path=data["path"],
            methods=list(data.get("methods", [])),
            exists=bool(data.get("exists", True)),
            last_modified=datetime.fromisoformat(modified) if modified else None,
        )


@dataclass
class ComponentInfo:
    path: str
    has_database: bool
    hardcoded_data_removed: bool = False
    last_modified: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "has_database": self.has_database,
            "hardcoded_data_removed": self.hardcoded_data_removed,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComponentInfo:
        modified = data.get("last_modified")
        return cls(
            path=data["path"],
            has_database=bool(data.get("has_database", False)),
            hardcoded_data_removed=bool(data.get("hardcoded_data_removed", False)),
            last_modified=datetime.fromisoformat(modified) if modified else None,
        )


def _mtime(path: Path) -> datetime | None:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
    except OSError:
        return None


def _read(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.debug("Could not read %s: %s", path, e)
        return None


def extract_http_methods(content: str) -> list[str]:
    """HTTP methods exported as route handlers, in source order."""
    methods: list[str] = []
    for match in _HTTP_METHOD_RE.finditer(content):
        if match.group(1) not in methods:
            methods.append(match.group(1))
    return methods


def uses_database(content: str) -> bool:
    return any(indicator in content for indicator in DATABASE_INDICATORS)


def hardcoded_data_removed(content: str) -> bool:
    """True when a component reads from the database and declares no literal data."""
    if not uses_database(content):
        return False
    return not any(pattern.search(content) for pattern in _HARDCODED_PATTERNS)


def scan_api_routes(root: Path) -> list[ApiRoute]:
    """Discover API routes of both Next.js routers, sorted by URL path."""
    routes: dict[str, ApiRoute] = {}

    app_dir = root / APP_API_DIR
    if app_dir.is_dir():
        for name in ROUTE_FILES:
            for route_file in app_dir.rglob(name):
                content = _read(route_file)
                if content is None:
                    continue
                relative = route_file.parent.relative_to(app_dir).as_posix()
                path = "/api" if relative == "." else f"/api/{relative}"
                routes.setdefault(
                    path,
                    ApiRoute(path, extract_http_methods(content), True, _mtime(route_file)),
                )

    pages_dir = root / PAGES_API_DIR
    if pages_dir.is_dir():
        for page_file in pages_dir.rglob("*"):
            if not page_file.is_file() or page_file.suffix not in PAGE_SUFFIXES:
                continue
            content = _read(page_file)
            if content is None:
                continue
            relative = page_file.relative_to(pages_dir).with_suffix("").as_posix()
            if relative == "index":
                relative = ""
            elif relative.endswith("/index"):
                relative = relative[: -len("/index")]
            path = f"/api/{relative}" if relative else "/api"
            routes.setdefault(
                path, ApiRoute(path, extract_http_methods(content), True, _mtime(page_file))
            )

    return [routes[path] for path in sorted(routes)]


def scan_components(root: Path) -> list[ComponentInfo]:
    """Inspect every component file for database usage."""
    components: list[ComponentInfo] = []
    for directory in COMPONENT_DIRS:
        base = root / directory
        if not base.is_dir():
            continue
        for source in sorted(base.rglob("*")):
            if not source.is_file() or source.suffix not in COMPONENT_SUFFIXES:
                continue
            content = _read(source)
            if content is None:
                continue
            components.append(
                ComponentInfo(
                    path=source.relative_to(root).as_posix(),
                    has_database=uses_database(content),
                    hardcoded_data_removed=hardcoded_data_removed(content),
                    last_modified=_mtime(source),
                )
            )
    return components


def _api_segments(api_path: str) -> str:
    return re.sub(r"^/?api(?:/|$)", "", api_path).strip("/")


def api_path_to_file(root: Path, api_path: str) -> Path:
    """App-router file that would serve ``api_path``."""
    return root / APP_API_DIR / _api_segments(api_path) / "route.ts"


def api_route_exists(root: Path, api_path: str) -> bool:
    """True when a route file for ``api_path`` exists in either router."""
    segments = _api_segments(api_path)
    candidates = [root / APP_API_DIR / segments / name for name in ROUTE_FILES]
    if segments:
        candidates.extend(root / PAGES_API_DIR / f"{segments}{s}" for s in PAGE_SUFFIXES)
    candidates.extend(root / PAGES_API_DIR / segments / f"index{s}" for s in PAGE_SUFFIXES)
    return any(candidate.is_file() for candidate in candidates)
