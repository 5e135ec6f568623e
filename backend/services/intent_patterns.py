"""
Pattern fast-path: common requests answered without calling the remote generator.

Rules are data. Each rule lists the cues it requires and the cues that must be
absent; the first rule (in table order) whose condition holds wins. Cue
detection matches word starts (Latin script) or substrings (Indic scripts) over
the lower-cased prompt, in English plus Hindi, Marathi and Gujarati. A miss is
never an error, the request simply goes on to remote generation.
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Sequence, Tuple

from backend.services.models import GeneratedQuery

CUE_LEXICON: Dict[str, Tuple[str, ...]] = {
    "month":   ("month", "monthly", "महीने", "महीना", "मासिक", "महिन्या", "महिना", "મહિન", "માસિક"),
    "week":    ("week", "weekly", "हफ्ते", "हफ़्ते", "सप्ताह", "आठवड", "અઠવાડ", "સપ્તાહ"),
    "sales":   ("sales", "sale", "revenue", "total", "बिक्री", "कुल", "विक्री", "एकूण", "વેચાણ", "કુલ"),
    "today":   ("today", "आज", "આજ"),
    "order":   ("order", "ऑर्डर", "आदेश", "ઓર્ડર"),
    "product": ("product", "item", "उत्पाद", "प्रोडक्ट", "उत्पादन", "પ્રોડક્ટ", "ઉત્પાદન"),
}

_MONTH_START = "date_trunc('month', CURRENT_DATE)"
_WEEK_START = "date_trunc('week', CURRENT_DATE)"

SQL_MONTH_AND_WEEK_SALES = (
    "SELECT "
    f"COALESCE(SUM(CASE WHEN created_at >= {_MONTH_START} THEN amount END), 0) AS monthly_sales, "
    f"COALESCE(SUM(CASE WHEN created_at >= {_WEEK_START} THEN amount END), 0) AS weekly_sales "
    "FROM orders WHERE customer_id = ? "
    f"AND created_at >= LEAST({_MONTH_START}, {_WEEK_START})"
)
SQL_MONTH_SALES = (
    "SELECT COALESCE(SUM(amount), 0) AS monthly_sales FROM orders "
    f"WHERE customer_id = ? AND created_at >= {_MONTH_START}"
)
SQL_WEEK_SALES = (
    "SELECT COALESCE(SUM(amount), 0) AS weekly_sales FROM orders "
    f"WHERE customer_id = ? AND created_at >= {_WEEK_START}"
)
SQL_TOTAL_SALES = "SELECT COALESCE(SUM(amount), 0) AS total_sales FROM orders WHERE customer_id = ?"
SQL_TODAYS_ORDERS = (
    "SELECT * FROM orders WHERE customer_id = ? "
    "AND created_at >= CURRENT_DATE AND created_at < CURRENT_DATE + INTERVAL '1 day' "
    "ORDER BY created_at DESC"
)
SQL_MY_ORDERS = "SELECT * FROM orders WHERE customer_id = ? ORDER BY created_at DESC LIMIT 50"
SQL_ACTIVE_PRODUCTS = (
    "SELECT id, title, sku, price, inventory_quantity FROM products "
    "WHERE is_active = TRUE ORDER BY title ASC LIMIT 50"
)


@dataclass(frozen=True)
class IntentRule:
    name:        str
    sql:         str
    requires:    FrozenSet[str]
    excludes:    FrozenSet[str] = frozenset()
    by_identity: bool = True

    def applies(self, cues: FrozenSet[str]) -> bool:
        return self.requires <= cues and not (self.excludes & cues)


def _rule(name: str, sql: str, requires: Sequence[str], excludes: Sequence[str] = (), by_identity: bool = True) -> IntentRule:
    return IntentRule(name, sql, frozenset(requires), frozenset(excludes), by_identity)


INTENT_RULES: Tuple[IntentRule, ...] = (
    _rule("month_and_week_sales", SQL_MONTH_AND_WEEK_SALES, ("month", "week", "sales")),
    _rule("month_sales", SQL_MONTH_SALES, ("month", "sales"), excludes=("week",)),
    _rule("week_sales", SQL_WEEK_SALES, ("week", "sales"), excludes=("month",)),
    _rule("total_sales", SQL_TOTAL_SALES, ("sales",), excludes=("month", "week")),
    _rule("todays_orders", SQL_TODAYS_ORDERS, ("today", "order")),
    _rule("my_orders", SQL_MY_ORDERS, ("order",), excludes=("today",)),
    _rule("active_products", SQL_ACTIVE_PRODUCTS, ("product",), by_identity=False),
)


def _cue_pattern(words: Sequence[str]) -> "re.Pattern[str]":
    # Latin tokens must start a word ("orders" hits, "border" does not);
    # Indic scripts use combining marks that defeat \b, so they stay substrings.
    parts = [
        r"(?<![a-z0-9_])" + re.escape(w) if w.isascii() else re.escape(w)
        for w in words
    ]
    return re.compile("|".join(parts))


_CUE_PATTERNS: Dict[str, "re.Pattern[str]"] = {cue: _cue_pattern(words) for cue, words in CUE_LEXICON.items()}


def detect_cues(text: str) -> FrozenSet[str]:
    low = (text or "").lower()
    return frozenset(cue for cue, pattern in _CUE_PATTERNS.items() if pattern.search(low))


def match_rule(text: str, rules: Sequence[IntentRule] = INTENT_RULES) -> Optional[IntentRule]:
    cues = detect_cues(text)
    if not cues:
        return None
    for rule in rules:
        if rule.applies(cues):
            return rule
    return None


def match_intent(text: str, identity: Any, rules: Sequence[IntentRule] = INTENT_RULES) -> Optional[GeneratedQuery]:
    rule = match_rule(text, rules)
    if rule is None:
        return None
    params = (identity,) if rule.by_identity else ()
    return GeneratedQuery(sql=rule.sql, params=params)
