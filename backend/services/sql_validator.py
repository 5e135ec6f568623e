"""
Whitelist SQL validator - the last gate before execution.

Rules (checked in order, first failure wins):
1) non-empty string
2) no statement separator
3) SELECT only
4) at least one whitelisted table referenced
5) every function called anywhere in the statement is on the allow-list,
   and every selected column belongs to one of the referenced tables

This is deliberately lexical rather than a full SQL parser: it is cheap and its
decisions are easy to audit. Known limitation: subqueries in the select list
and exotic expressions are judged only by the identifiers they contain, so
complex SQL may be rejected even when it is harmless.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from backend.services.whitelist import DEFAULT_WHITELIST, Whitelist

REASON_OK = "OK"

_SELECT_LIST = re.compile(r"^select\s+(.+?)\s+from\s+", re.DOTALL)
_STRING_LITERAL = re.compile(r"'(?:''|[^'])*'")
_CAST_SUFFIX = re.compile(r"::\s*[a-z_][a-z0-9_]*(?:\s*\(\s*\d+(?:\s*,\s*\d+)?\s*\))?")
_ALIAS_SUFFIX = re.compile(r"\s+as\s+[a-z_][a-z0-9_]*$")
_LEADING_MODIFIER = re.compile(r"^(?:distinct|all)\s+|^top\s*\(?\s*\d+\s*\)?\s+")
_IDENTIFIER = re.compile(r"(?<![\w.])([a-z_][a-z0-9_]*(?:\.[a-z_][a-z0-9_]*)*)(\s*\()?")

# Words that may appear inside a select-list expression but are not columns.
_EXPRESSION_KEYWORDS = frozenset({
    "case", "when", "then", "else", "end", "and", "or", "not", "null", "is", "in",
    "between", "like", "ilike", "distinct", "all", "filter", "where", "over",
    "partition", "by", "order", "asc", "desc", "as", "true", "false", "interval",
    "current_date", "current_timestamp", "current_time", "localtimestamp",
    "date", "timestamp", "time", "integer", "int", "bigint", "numeric", "decimal",
    "text", "varchar", "boolean",
})

# Keywords that can be followed by "(" without being a function call.
_CLAUSE_KEYWORDS = _EXPRESSION_KEYWORDS | frozenset({
    "select", "from", "join", "on", "using", "exists", "any", "some", "within",
    "group", "having", "union", "values", "lateral",
})

# Scalar and aggregate functions the generated SQL may call. Anything else
# (pg_read_file, pg_sleep, current_setting, dblink, ...) is refused.
ALLOWED_FUNCTIONS = frozenset({
    "count", "sum", "avg", "min", "max", "coalesce", "nullif", "greatest", "least",
    "date_trunc", "date_part", "extract", "cast", "round", "abs", "ceil", "floor",
    "lower", "upper", "trim", "length", "concat", "to_char", "now",
})

_CALL = re.compile(r"(?<![\w.])([a-z_][a-z0-9_]*(?:\.[a-z_][a-z0-9_]*)*)\s*\(")


@dataclass(frozen=True)
class ValidationVerdict:
    valid: bool
    reason: str
    tables: Tuple[str, ...] = field(default=())


def _reject(reason: str, tables: Tuple[str, ...] = ()) -> ValidationVerdict:
    return ValidationVerdict(valid=False, reason=reason, tables=tables)


def _split_top_level(select_list: str) -> List[str]:
    """Split on commas that are not nested in parentheses or string literals."""
    parts: List[str] = []
    depth = 0
    in_quote = False
    buf: List[str] = []
    for ch in select_list:
        if ch == "'":
            in_quote = not in_quote
        elif not in_quote:
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth = max(0, depth - 1)
            elif ch == "," and depth == 0:
                parts.append("".join(buf))
                buf = []
                continue
        buf.append(ch)
    parts.append("".join(buf))
    return [p.strip() for p in parts if p.strip()]


def _column_refs(token: str) -> List[str]:
    """Bare column names referenced by one select-list item."""
    tok = _STRING_LITERAL.sub(" ", token)
    tok = re.sub(r"[\"`\[\]]", "", tok).strip()
    tok = _ALIAS_SUFFIX.sub("", tok).strip()
    tok = _LEADING_MODIFIER.sub("", tok).strip()

    if "(" not in tok and " " not in tok:
        return [tok.split(".")[-1]]

    tok = _CAST_SUFFIX.sub(" ", tok)
    refs: List[str] = []
    for m in _IDENTIFIER.finditer(tok):
        name, call = m.group(1), m.group(2)
        if call:
            continue  # function name, vetted by _disallowed_function
        bare = name.split(".")[-1]
        if bare in _EXPRESSION_KEYWORDS:
            continue
        refs.append(bare)
    return refs


def _disallowed_function(sql: str) -> Optional[str]:
    """First called function that is not on the allow-list, if any."""
    text = _STRING_LITERAL.sub(" ", sql)
    text = re.sub(r"[\"`\[\]]", "", text)
    text = _CAST_SUFFIX.sub(" ", text)
    for m in _CALL.finditer(text):
        name = m.group(1)
        bare = name.split(".")[-1]
        if bare in _CLAUSE_KEYWORDS:
            continue
        if bare not in ALLOWED_FUNCTIONS or "." in name:
            return name
    return None


def referenced_tables(sql: str, whitelist: Whitelist = DEFAULT_WHITELIST) -> Tuple[str, ...]:
    low = (sql or "").lower()
    return tuple(t for t in whitelist if re.search(r"\b" + re.escape(t) + r"\b", low))


def validate_generated_sql(sql: Any, whitelist: Whitelist = DEFAULT_WHITELIST) -> ValidationVerdict:
    if not sql or not isinstance(sql, str) or not sql.strip():
        return _reject("No SQL")

    s = sql.strip().lower()

    if ";" in s:
        return _reject("Multiple statements or semicolon found")
    if not s.startswith("select"):
        return _reject("Only SELECT allowed")

    used_tables = referenced_tables(s, whitelist)
    if not used_tables:
        return _reject("No allowed table found")

    m = _SELECT_LIST.search(s)
    if not m:
        return _reject("Could not parse SELECT columns", used_tables)

    func = _disallowed_function(s)
    if func is not None:
        return _reject(f"Function {func} not allowed", used_tables)

    allowed = set()
    for t in used_tables:
        allowed |= whitelist[t]

    for item in _split_top_level(m.group(1)):
        for col in _column_refs(item):
            if col == "*":
                continue
            if col not in allowed:
                return _reject(f"Column {col} not in whitelist", used_tables)

    return ValidationVerdict(valid=True, reason=REASON_OK, tables=used_tables)
