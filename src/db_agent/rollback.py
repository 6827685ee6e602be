"""Reverse-SQL generation for executed migrations.

Every statement is classified as reversible (with the statement that undoes
it) or irreversible (with a reason). Rollback scripts drop what the
migration created, in reverse order. Data changes, drops and unrecognised
statements cannot be undone and are reported instead of being silently
ignored; they do not block execution.

A statement that only touches a table created by the same migration is
covered by that table's ``DROP TABLE ... CASCADE`` and needs no reversal
of its own.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .sql_parser import (
    IDENT,
    QUALIFIED_IDENT,
    StatementKind,
    extract_created_tables,
    mask_literals,
    quote_ident,
    statement_kind,
    tokenize,
    unquote_identifier,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reversible:
    """A statement that undoes one created object."""

    statement: str


@dataclass(frozen=True)
class Irreversible:
    """A statement whose effect the rollback script will not undo."""

    kind: StatementKind
    reason: str
    statement: str = ""


Reversal = Reversible | Irreversible


@dataclass
class RollbackPlan:
    sql: str | None
    irreversible: list[Irreversible] = field(default_factory=list)

    @property
    def can_rollback(self) -> bool:
        return self.sql is not None


_TABLE_RE = re.compile(
    r"\bCREATE\s+(?:(?:GLOBAL|LOCAL)\s+)?(?:(?:TEMP|TEMPORARY|UNLOGGED)\s+)?TABLE\s+"
    rf"(?:IF\s+NOT\s+EXISTS\s+)?({QUALIFIED_IDENT})",
    re.IGNORECASE,
)
_INDEX_RE = re.compile(
    r"\bCREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+NOT\s+EXISTS\s+)?"
    rf"({QUALIFIED_IDENT})\s+ON\b",
    re.IGNORECASE,
)
_POLICY_RE = re.compile(
    rf"\bCREATE\s+POLICY\s+({IDENT})\s+ON\s+({QUALIFIED_IDENT})", re.IGNORECASE
)
_TRIGGER_RE = re.compile(
    rf"\bCREATE\s+(?:OR\s+REPLACE\s+)?(?:CONSTRAINT\s+)?TRIGGER\s+({IDENT})\s.*?"
    rf"\bON\s+({QUALIFIED_IDENT})",
    re.IGNORECASE | re.DOTALL,
)
_FUNCTION_RE = re.compile(
    rf"\bCREATE\s+(?:OR\s+REPLACE\s+)?FUNCTION\s+({QUALIFIED_IDENT})\s*\((\s*\))?",
    re.IGNORECASE,
)
_EXTENSION_RE = re.compile(
    rf"\bCREATE\s+EXTENSION\s+(?:IF\s+NOT\s+EXISTS\s+)?({IDENT})", re.IGNORECASE
)
_VIEW_RE = re.compile(
    r"\bCREATE\s+(?:OR\s+REPLACE\s+)?(?:(?:TEMP|TEMPORARY)\s+)?(?:RECURSIVE\s+)?VIEW\s+"
    rf"({QUALIFIED_IDENT})",
    re.IGNORECASE,
)
_ALTER_TABLE_RE = re.compile(
    rf"\bALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?({QUALIFIED_IDENT})", re.IGNORECASE
)
_ADD_COLUMN_RE = re.compile(
    r"\bADD\s+(?:COLUMN\s+)?(?:IF\s+NOT\s+EXISTS\s+)?"
    rf"(?!(?:CONSTRAINT|PRIMARY|UNIQUE|FOREIGN|CHECK|EXCLUDE)\b)({IDENT})",
    re.IGNORECASE,
)
_TARGET_RE = re.compile(
    r"^(?:INSERT\s+INTO|UPDATE|DELETE\s+FROM|ALTER\s+TABLE(?:\s+IF\s+EXISTS)?"
    r"|CREATE\s+(?:UNIQUE\s+)?INDEX\b.*?\bON)\s+"
    rf"(?:ONLY\s+)?({QUALIFIED_IDENT})",
    re.IGNORECASE | re.DOTALL,
)
_NO_EFFECT_RE = re.compile(r"^(?:COMMENT\s+ON|SELECT|SET|ANALYZE|NOTIFY)\b", re.IGNORECASE)


def _compact(raw: str) -> str:
    """Qualified identifier text with the whitespace around dots removed."""
    return re.sub(r"\s*\.\s*", ".", raw.strip())


def _body_of(statement: str) -> str | None:
    for token in tokenize(statement):
        if token.kind == "dollar":
            return statement[token.start + token.open_len:token.end - token.close_len]
    return None


def _drop_columns(masked: str) -> list[Reversal]:
    match = _ALTER_TABLE_RE.search(masked)
    if match is None:
        return []
    table = _compact(match.group(1))
    tail = masked[match.end():]
    return [
        Reversible(f"ALTER TABLE {table} DROP COLUMN IF EXISTS {column.group(1)};")
        for column in _ADD_COLUMN_RE.finditer(tail)
    ]


def _reverse_do_block(statement: str) -> list[Reversal]:
    """Reverse the object creations found inside a ``DO`` body, in body order."""
    body = _body_of(statement)
    if body is None:
        return [Irreversible(StatementKind.DO_BLOCK, "DO block without a body", statement)]
    masked = mask_literals(body)

    found: list[tuple[int, Reversal]] = []
    for match in _TABLE_RE.finditer(masked):
        found.append(
            (match.start(), Reversible(f"DROP TABLE IF EXISTS {_compact(match.group(1))} CASCADE;"))
        )
    for match in _INDEX_RE.finditer(masked):
        found.append(
            (match.start(), Reversible(f"DROP INDEX IF EXISTS {_compact(match.group(1))};"))
        )
    for match in _POLICY_RE.finditer(masked):
        found.append((match.start(), _drop_policy(match)))
    for match in _TRIGGER_RE.finditer(masked):
        found.append((match.start(), _drop_trigger(match)))
    for match in _ALTER_TABLE_RE.finditer(masked):
        for reversal in _drop_columns(masked[match.start():].split(";", 1)[0]):
            found.append((match.start(), reversal))

    if not found:
        return [
            Irreversible(
                StatementKind.DO_BLOCK, "DO block creates no recognised objects", statement
            )
        ]
    return [reversal for _, reversal in sorted(found, key=lambda item: item[0])]


def _drop_policy(match: re.Match[str]) -> Reversible:
    policy = quote_ident(unquote_identifier(match.group(1)))
    return Reversible(f"DROP POLICY IF EXISTS {policy} ON {_compact(match.group(2))};")


def _drop_trigger(match: re.Match[str]) -> Reversible:
    return Reversible(
        f"DROP TRIGGER IF EXISTS {match.group(1)} ON {_compact(match.group(2))};"
    )


def reverse_statement(statement: str) -> list[Reversal]:
    """Classify one statement and produce the statements that undo it.

    Returns an empty list for statements with nothing to undo (transaction
    control, comments, plain selects). A statement can yield several
    reversals, e.g. ``ALTER TABLE t ADD COLUMN a int, ADD COLUMN b int``.
    """
    masked = mask_literals(statement).strip()
    kind = statement_kind(masked)

    if kind is StatementKind.CREATE_TABLE:
        match = _TABLE_RE.match(masked)
        if match:
            return [Reversible(f"DROP TABLE IF EXISTS {_compact(match.group(1))} CASCADE;")]
    elif kind is StatementKind.CREATE_INDEX:
        match = _INDEX_RE.match(masked)
        if match:
            return [Reversible(f"DROP INDEX IF EXISTS {_compact(match.group(1))};")]
        return [Irreversible(kind, "unnamed index cannot be dropped by name", statement)]
    elif kind is StatementKind.CREATE_POLICY:
        match = _POLICY_RE.match(masked)
        if match:
            return [_drop_policy(match)]
    elif kind is StatementKind.CREATE_TRIGGER:
        match = _TRIGGER_RE.match(masked)
        if match:
            return [_drop_trigger(match)]
    elif kind is StatementKind.CREATE_FUNCTION:
        match = _FUNCTION_RE.match(masked)
        if match:
            name = _compact(match.group(1))
            # Without an argument list the drop only works for an unambiguous name
            signature = f"{name}()" if match.group(2) is not None else name
            return [Reversible(f"DROP FUNCTION IF EXISTS {signature};")]
    elif kind is StatementKind.CREATE_EXTENSION:
        match = _EXTENSION_RE.match(masked)
        if match:
            extension = quote_ident(unquote_identifier(match.group(1)))
            return [Reversible(f"DROP EXTENSION IF EXISTS {extension};")]
    elif kind is StatementKind.CREATE_VIEW:
        match = _VIEW_RE.match(masked)
        if match:
            return [Reversible(f"DROP VIEW IF EXISTS {_compact(match.group(1))};")]
    elif kind is StatementKind.ALTER_TABLE:
        reversals = _drop_columns(masked)
        if reversals:
            return reversals
        return [Irreversible(kind, "ALTER TABLE change has no generated reverse", statement)]
    elif kind is StatementKind.DO_BLOCK:
        return _reverse_do_block(statement)
    elif kind is StatementKind.TRANSACTION:
        return []
    elif kind in (StatementKind.DROP_TABLE, StatementKind.DROP_INDEX):
        return [Irreversible(kind, "dropped objects cannot be restored", statement)]
    elif kind is StatementKind.INSERT:
        return [Irreversible(kind, "inserted rows are not removed", statement)]
    elif _NO_EFFECT_RE.match(masked):
        return []

    return [Irreversible(kind, "no reverse action known for this statement", statement)]


def target_table(statement: str) -> str | None:
    """Table a data or ALTER statement operates on, unqualified."""
    match = _TARGET_RE.match(mask_literals(statement).strip())
    if match is None:
        return None
    return unquote_identifier(match.group(1))


def build_rollback(statements: list[str]) -> RollbackPlan:
    """Rollback script for a parsed migration.

    Reversals are emitted in reverse statement order, one per line.
    ``sql`` is None when nothing is reversible.
    """
    created = set(extract_created_tables(statements))
    lines: list[str] = []
    irreversible: list[Irreversible] = []

    for statement in reversed(statements):
        for reversal in reversed(reverse_statement(statement)):
            if isinstance(reversal, Reversible):
                if reversal.statement not in lines:
                    lines.append(reversal.statement)
            elif target_table(statement) in created:
                logger.debug("Covered by table drop: %s", statement.splitlines()[0])
            else:
                irreversible.append(reversal)

    irreversible.reverse()
    return RollbackPlan(sql="\n".join(lines) if lines else None, irreversible=irreversible)
