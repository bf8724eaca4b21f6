"""Split a migration script into individually executable statements.

Terminators (``;``) are only honoured at top level. The scanner steps over
Postgres string literals, escape strings, quoted identifiers, dollar-quoted
bodies and comments, all of which may contain semicolons.
"""

from __future__ import annotations

import re

from pgstage.exceptions import MalformedSqlError

__all__ = ["split_sql_statements"]

# $$ or $tag$; tags follow identifier rules, so $1 is a parameter, not a quote.
_DOLLAR_TAG_RE = re.compile(r"\$(?:[^\W\d]\w*)?\$")


def _is_identifier_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def _line_of(sql: str, pos: int) -> int:
    return sql.count("\n", 0, pos) + 1


def _skip_quoted(sql: str, start: int, quote: str, backslash_escapes: bool) -> int:
    """Return the index just past the literal opened at ``start``."""
    n = len(sql)
    j = start + 1
    while j < n:
        ch = sql[j]
        if backslash_escapes and ch == "\\":
            j += 2
            continue
        if ch == quote:
            if j + 1 < n and sql[j + 1] == quote:
                j += 2
                continue
            return j + 1
        j += 1

    kind = "quoted identifier" if quote == '"' else "string literal"
    line = _line_of(sql, start)
    raise MalformedSqlError(f"Unterminated {kind} starting at line {line}", line=line)


def _skip_block_comment(sql: str, start: int) -> int:
    n = len(sql)
    depth = 1
    j = start + 2
    while j < n:
        pair = sql[j : j + 2]
        if pair == "/*":
            depth += 1
            j += 2
        elif pair == "*/":
            depth -= 1
            j += 2
            if depth == 0:
                return j
        else:
            j += 1

    line = _line_of(sql, start)
    raise MalformedSqlError(
        f"Unterminated block comment starting at line {line}", line=line
    )


def _skip_dollar_quoted(sql: str, start: int, tag: str) -> int:
    end = sql.find(tag, start + len(tag))
    if end == -1:
        line = _line_of(sql, start)
        raise MalformedSqlError(
            f"Unterminated dollar-quoted block {tag} starting at line {line}",
            line=line,
        )
    return end + len(tag)


def split_sql_statements(sql: str) -> list[str]:
    """Split SQL text into individual statements.

    Handles:
    - Semicolons inside '...' strings, E'...' escape strings and "..." identifiers
    - Dollar-quoted bodies ($$...$$, $fn$...$fn$), e.g. plpgsql functions
    - -- line comments and nested /* */ block comments

    Empty fragments and fragments holding only comments are dropped.

    Args:
        sql: SQL text potentially containing multiple statements.

    Returns:
        Statements in script order, stripped and without trailing semicolons.

    Raises:
        MalformedSqlError: If a literal, identifier, dollar quote or block
            comment is never closed.
    """
    statements: list[str] = []
    n = len(sql)
    start = 0
    has_code = False
    i = 0

    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""

        if ch == "-" and nxt == "-":
            newline = sql.find("\n", i)
            i = n if newline == -1 else newline + 1
            continue

        if ch == "/" and nxt == "*":
            i = _skip_block_comment(sql, i)
            continue

        if ch == "'":
            escape_string = (
                i > 0
                and sql[i - 1] in "eE"
                and (i < 2 or not _is_identifier_char(sql[i - 2]))
            )
            i = _skip_quoted(sql, i, "'", backslash_escapes=escape_string)
            has_code = True
            continue

        if ch == '"':
            i = _skip_quoted(sql, i, '"', backslash_escapes=False)
            has_code = True
            continue

        if ch == "$" and (i == 0 or not _is_identifier_char(sql[i - 1])):
            match = _DOLLAR_TAG_RE.match(sql, i)
            if match:
                i = _skip_dollar_quoted(sql, i, match.group(0))
                has_code = True
                continue

        if ch == ";":
            if has_code:
                statements.append(sql[start:i].strip())
            start = i + 1
            has_code = False
            i += 1
            continue

        if not ch.isspace():
            has_code = True
        i += 1

    if has_code:
        statements.append(sql[start:].strip())

    return statements
