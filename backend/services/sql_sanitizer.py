"""Clean raw generator output down to a single compact SQL statement."""
import re
from typing import List

_FENCE = re.compile(r"```[a-zA-Z]*")
# WITH only counts when it opens a CTE, so prose like "query with totals" is skipped.
_START = re.compile(
    r"(?i)\b(?:select\b|with\s+(?:recursive\s+)?[a-z_]\w*\s*(?:\([^)]*\)\s*)?as\s*\()"
)
_SELECT_WORD = re.compile(r"(?i)\bselect\b")
_FROM_WORD = re.compile(r"(?i)\bfrom\b")
_WHITESPACE = re.compile(r"\s+")


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _statement_at(text: str, start: int) -> str:
    end = text.find(";", start)
    return text[start:] if end < 0 else text[start:end]


def _at_line_start(text: str, start: int) -> bool:
    return not text[text.rfind("\n", 0, start) + 1:start].strip()


def _well_formed(stmt: str) -> bool:
    # "select your orders: SELECT id FROM ..." is prose: a second SELECT shows
    # up before the first FROM.
    if not stmt[:6].lower() == "select":
        return True
    from_match = _FROM_WORD.search(stmt)
    if from_match is None:
        return False
    return _SELECT_WORD.search(stmt, 6, from_match.start()) is None


def clean_sql(raw_text: str) -> str:
    """Strip code fences and backticks, then return the first SELECT/WITH statement.

    A statement opening a line wins over one embedded in a sentence, and a
    SELECT whose select list holds another SELECT is treated as prose. If no
    statement is found the whitespace-collapsed input is returned unchanged,
    so the validator can reject it with an explicit reason.
    """
    raw = raw_text or ""
    text = _FENCE.sub(" ", raw).replace("`", " ")
    starts: List[int] = [m.start() for m in _START.finditer(text)]
    if not starts:
        return _collapse(raw)

    for start in starts:
        stmt = _statement_at(text, start)
        if _at_line_start(text, start) and _well_formed(stmt):
            return _collapse(stmt)
    for start in starts:
        stmt = _statement_at(text, start)
        if _well_formed(stmt):
            return _collapse(stmt)
    return _collapse(_statement_at(text, starts[0]))
