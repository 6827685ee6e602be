"""SQL statement parser for PostgreSQL migration scripts.

Splits a multi-statement script into independently executable statements.
A character-level tokenizer recognises the regions where a semicolon or a
keyword means nothing:

- ``-- line`` and ``/* block */`` comments
- single-quoted strings (``''`` doubling and backslash escapes)
- double-quoted identifiers
- dollar-quoted bodies (``$$ ... $$`` and ``$tag$ ... $tag$``, matched exactly)

so a ``CREATE FUNCTION ... AS $$ BEGIN ... END; $$ LANGUAGE plpgsql;`` comes
out as one statement. Transaction-control statements are dropped because the
executor runs each statement on its own.

The same tokenizer backs the idempotency rewriter, the validator, the impact
analyzer and the rollback generator, so none of them match keywords that only
appear inside literals or function bodies.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple

logger = logging.getLogger(__name__)

_DOLLAR_TAG_RE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")
_TRANSACTION_RE = re.compile(
    r"^\s*(?:BEGIN|COMMIT|ROLLBACK|START\s+TRANSACTION)\b", re.IGNORECASE
)

IDENT = r'(?:"(?:[^"]|"")+"|[A-Za-z_][A-Za-z0-9_$]*)'
QUALIFIED_IDENT = rf"{IDENT}(?:\s*\.\s*{IDENT})?"

_CREATE_TABLE_RE = re.compile(
    r"^\s*CREATE\s+(?:(?:GLOBAL|LOCAL)\s+)?(?:(?:TEMP|TEMPORARY|UNLOGGED)\s+)?"
    rf"TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?({QUALIFIED_IDENT})",
    re.IGNORECASE,
)


class Token(NamedTuple):
    """A lexical region of a script.

    ``open_len`` / ``close_len`` are the widths of the delimiters that
    bracket the region (zero for code, and for an unterminated close).
    """

    kind: str  # "code", "comment", "string", "ident", "dollar" or "semicolon"
    start: int
    end: int
    open_len: int = 0
    close_len: int = 0


class StatementKind(Enum):
    CREATE_TABLE = "create_table"
    CREATE_INDEX = "create_index"
    CREATE_POLICY = "create_policy"
    CREATE_TRIGGER = "create_trigger"
    CREATE_FUNCTION = "create_function"
    CREATE_EXTENSION = "create_extension"
    CREATE_VIEW = "create_view"
    ALTER_TABLE = "alter_table"
    DROP_TABLE = "drop_table"
    DROP_INDEX = "drop_index"
    INSERT = "insert"
    DO_BLOCK = "do_block"
    TRANSACTION = "transaction"
    OTHER = "other"


_KIND_PATTERNS: list[tuple[StatementKind, re.Pattern[str]]] = [
    (
        StatementKind.CREATE_TABLE,
        re.compile(
            r"^CREATE\s+(?:(?:GLOBAL|LOCAL)\s+)?(?:(?:TEMP|TEMPORARY|UNLOGGED)\s+)?TABLE\b",
            re.IGNORECASE,
        ),
    ),
    (StatementKind.CREATE_INDEX, re.compile(r"^CREATE\s+(?:UNIQUE\s+)?INDEX\b", re.IGNORECASE)),
    (StatementKind.CREATE_POLICY, re.compile(r"^CREATE\s+POLICY\b", re.IGNORECASE)),
    (
        StatementKind.CREATE_TRIGGER,
        re.compile(r"^CREATE\s+(?:OR\s+REPLACE\s+)?(?:CONSTRAINT\s+)?TRIGGER\b", re.IGNORECASE),
    ),
    (
        StatementKind.CREATE_FUNCTION,
        re.compile(r"^CREATE\s+(?:OR\s+REPLACE\s+)?FUNCTION\b", re.IGNORECASE),
    ),
    (StatementKind.CREATE_EXTENSION, re.compile(r"^CREATE\s+EXTENSION\b", re.IGNORECASE)),
    (
        StatementKind.CREATE_VIEW,
        re.compile(
            r"^CREATE\s+(?:OR\s+REPLACE\s+)?(?:(?:TEMP|TEMPORARY)\s+)?(?:RECURSIVE\s+)?VIEW\b",
            re.IGNORECASE,
        ),
    ),
    (StatementKind.ALTER_TABLE, re.compile(r"^ALTER\s+TABLE\b", re.IGNORECASE)),
    (StatementKind.DROP_TABLE, re.compile(r"^DROP\s+TABLE\b", re.IGNORECASE)),
    (StatementKind.DROP_INDEX, re.compile(r"^DROP\s+INDEX\b", re.IGNORECASE)),
    (StatementKind.INSERT, re.compile(r"^INSERT\s+INTO\b", re.IGNORECASE)),
    (StatementKind.DO_BLOCK, re.compile(r"^DO\b", re.IGNORECASE)),
]


@dataclass(frozen=True)
class StatementSpan:
    """Location of one top-level statement inside a script.

    ``start`` is where the previous statement ended, ``body_start`` is the
    first character that is neither whitespace nor comment, and ``end`` is
    one past the terminating semicolon (or the end of the script).
    """

    start: int
    body_start: int
    end: int
    text: str

    @property
    def keyword(self) -> str:
        match = re.match(r"[A-Za-z_]+", self.text)
        return match.group(0).upper() if match else ""

    @property
    def terminated(self) -> bool:
        return self.text.endswith(";")


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def tokenize(sql: str) -> Iterator[Token]:
    """Yield the lexical regions of ``sql`` in order, covering every character."""
    length = len(sql)
    i = 0
    code_start = 0

    def flush_code(upto: int) -> Iterator[Token]:
        if upto > code_start:
            yield Token("code", code_start, upto)

    while i < length:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < length else ""

        if ch == "-" and nxt == "-":
            yield from flush_code(i)
            end = sql.find("\n", i)
            end = length if end == -1 else end
            yield Token("comment", i, end, 2, 0)
            i = code_start = end
            continue

        if ch == "/" and nxt == "*":
            yield from flush_code(i)
            depth = 1
            j = i + 2
            while j < length and depth:
                if sql.startswith("/*", j):
                    depth += 1
                    j += 2
                elif sql.startswith("*/", j):
                    depth -= 1
                    j += 2
                else:
                    j += 1
            yield Token("comment", i, j, 2, 0)
            i = code_start = j
            continue

        if ch == "'":
            yield from flush_code(i)
            j = i + 1
            closed = False
            while j < length:
                if sql[j] == "\\":
                    j += 2
                elif sql[j] == "'" and j + 1 < length and sql[j + 1] == "'":
                    j += 2
                elif sql[j] == "'":
                    j += 1
                    closed = True
                    break
                else:
                    j += 1
            j = min(j, length)
            yield Token("string", i, j, 1, 1 if closed else 0)
            i = code_start = j
            continue

        if ch == '"':
            yield from flush_code(i)
            j = i + 1
            closed = False
            while j < length:
                if sql[j] == '"' and j + 1 < length and sql[j + 1] == '"':
                    j += 2
                elif sql[j] == '"':
                    j += 1
                    closed = True
                    break
                else:
                    j += 1
            yield Token("ident", i, j, 1, 1 if closed else 0)
            i = code_start = j
            continue

        if ch == "$" and (i == 0 or not _is_ident_char(sql[i - 1])):
            tag_match = _DOLLAR_TAG_RE.match(sql, i)
            if tag_match:
                yield from flush_code(i)
                tag = tag_match.group(0)
                close = sql.find(tag, i + len(tag))
                if close == -1:
                    yield Token("dollar", i, length, len(tag), 0)
                    i = code_start = length
                else:
                    end = close + len(tag)
                    yield Token("dollar", i, end, len(tag), len(tag))
                    i = code_start = end
                continue

        if ch == ";":
            yield from flush_code(i)
            yield Token("semicolon", i, i + 1)
            i = code_start = i + 1
            continue

        i += 1

    yield from flush_code(length)


def split_script(sql: str) -> list[StatementSpan]:
    """Locate every top-level statement of a script.

    Comment-only and whitespace-only stretches between semicolons produce
    no span. An unterminated trailing statement is returned as-is.
    """
    spans: list[StatementSpan] = []
    start = 0
    body_start: int | None = None

    for token in tokenize(sql):
        if token.kind == "semicolon":
            if body_start is not None:
                spans.append(StatementSpan(start, body_start, token.end, sql[body_start:token.end]))
            start = token.end
            body_start = None
        elif token.kind == "comment":
            continue
        elif body_start is None:
            if token.kind == "code":
                offset = len(sql[token.start:token.end]) - len(
                    sql[token.start:token.end].lstrip()
                )
                if token.start + offset < token.end:
                    body_start = token.start + offset
            else:
                body_start = token.start

    if body_start is not None:
        end = len(sql.rstrip())
        spans.append(StatementSpan(start, body_start, end, sql[body_start:end]))
    return spans


def mask_literals(sql: str) -> str:
    """Return a same-length copy with literal and comment contents blanked.

    String and dollar-quoted contents are replaced with spaces while their
    delimiters stay; comments are blanked entirely. Newlines are kept so line
    numbers still line up with the original text.
    """
    chars = list(sql)
    for token in tokenize(sql):
        if token.kind in ("code", "semicolon", "ident"):
            continue
        if token.kind == "comment":
            lo, hi = token.start, token.end
        else:
            lo, hi = token.start + token.open_len, token.end - token.close_len
        for k in range(lo, hi):
            if chars[k] != "\n":
                chars[k] = " "
    return "".join(chars)


def is_transaction_control(statement: str) -> bool:
    """True for BEGIN / COMMIT / ROLLBACK / START TRANSACTION statements."""
    return bool(_TRANSACTION_RE.match(statement))


def parse_statements(sql: str) -> list[str]:
    """Split a script into executable statements.

    Each statement keeps its terminating semicolon and embedded newlines.
    Blank lines and comment-only stretches between statements are dropped,
    as are transaction-control statements. Malformed input never raises:
    an unterminated trailing statement or dollar body is returned as the
    last statement and left for the database to reject.
    """
    statements: list[str] = []
    for span in split_script(sql):
        statement = span.text.strip()
        if not statement:
            continue
        if is_transaction_control(statement):
            logger.debug("Skipping transaction control statement: %s", statement)
            continue
        statements.append(statement)
    return statements


def _leading_code(statement: str) -> str:
    """Masked statement text with leading whitespace removed."""
    return mask_literals(statement).lstrip()


def statement_kind(statement: str) -> StatementKind:
    """Classify a statement by its leading keywords."""
    head = _leading_code(statement)
    if is_transaction_control(head):
        return StatementKind.TRANSACTION
    for kind, pattern in _KIND_PATTERNS:
        if pattern.match(head):
            return kind
    return StatementKind.OTHER


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def unquote_identifier(raw: str) -> str:
    """Drop the schema qualifier and surrounding double quotes of a name."""
    parts = re.findall(IDENT, raw)
    name = parts[-1] if parts else raw.strip()
    if len(name) >= 2 and name.startswith('"') and name.endswith('"'):
        name = name[1:-1].replace('""', '"')
    return name


def extract_created_tables(statements: list[str]) -> list[str]:
    """Names of the tables created by ``CREATE TABLE`` statements, in order."""
    tables: list[str] = []
    for statement in statements:
        match = _CREATE_TABLE_RE.match(mask_literals(statement))
        if match:
            name = unquote_identifier(match.group(1))
            if name not in tables:
                tables.append(name)
    return tables
