"""Read-only impact analysis of a SQL script against a state snapshot."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from .sql_parser import (
    QUALIFIED_IDENT,
    StatementKind,
    mask_literals,
    split_script,
    statement_kind,
    unquote_identifier,
)
from .state import SystemState

_TABLE_RE = re.compile(
    r"^CREATE\s+(?:(?:GLOBAL|LOCAL)\s+)?(?:(?:TEMP|TEMPORARY|UNLOGGED)\s+)?TABLE\s+"
    rf"(?:IF\s+NOT\s+EXISTS\s+)?({QUALIFIED_IDENT})",
    re.IGNORECASE,
)
_INDEX_RE = re.compile(
    r"^CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+NOT\s+EXISTS\s+)?"
    rf"({QUALIFIED_IDENT})\s+ON\b",
    re.IGNORECASE,
)
_POLICY_RE = re.compile(rf"\bCREATE\s+POLICY\s+({QUALIFIED_IDENT})", re.IGNORECASE)


@dataclass
class ImpactAnalysis:
    tables_created: list[str] = field(default_factory=list)
    tables_modified: list[str] = field(default_factory=list)
    indexes_created: list[str] = field(default_factory=list)
    policies_created: list[str] = field(default_factory=list)
    potential_conflicts: list[str] = field(default_factory=list)

    @property
    def requires_idempotency_check(self) -> bool:
        """Existing objects are touched, so re-run safety matters."""
        return bool(self.tables_modified or self.potential_conflicts)


def _add(items: list[str], name: str) -> None:
    if name not in items:
        items.append(name)


def analyze_impact(sql: str, state: SystemState) -> ImpactAnalysis:
    """Classify what a script would create or touch, without executing it.

    ``CREATE TABLE`` targets already present in ``state`` are reported as
    modified rather than created. Indexes that already exist are listed as
    potential conflicts. Policies are collected from top-level statements
    and from ``DO`` blocks alike.
    """
    impact = ImpactAnalysis()
    existing_tables = set(state.database.tables)
    existing_indexes = set(state.database.indexes)

    for span in split_script(sql):
        masked = mask_literals(span.text)
        kind = statement_kind(masked)

        if kind is StatementKind.CREATE_TABLE:
            match = _TABLE_RE.match(masked)
            if match:
                table = unquote_identifier(match.group(1))
                if table in existing_tables:
                    _add(impact.tables_modified, table)
                else:
                    _add(impact.tables_created, table)
        elif kind is StatementKind.CREATE_INDEX:
            match = _INDEX_RE.match(masked)
            if match:
                index = unquote_identifier(match.group(1))
                _add(impact.indexes_created, index)
                if index in existing_indexes:
                    _add(impact.potential_conflicts, f"index {index} already exists")
        elif kind is StatementKind.CREATE_POLICY:
            match = _POLICY_RE.match(masked)
            if match:
                _add(impact.policies_created, unquote_identifier(match.group(1)))
        elif kind is StatementKind.DO_BLOCK:
            # Masking hides the body, so search the raw text of the block.
            for match in _POLICY_RE.finditer(mask_literals(_strip_dollar_tags(span.text))):
                _add(impact.policies_created, unquote_identifier(match.group(1)))

    return impact


def _strip_dollar_tags(text: str) -> str:
    """Turn ``DO $tag$ body $tag$`` into plain text so its body is scannable."""
    return re.sub(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$", " ", text)
