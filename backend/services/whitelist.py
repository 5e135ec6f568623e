"""
Whitelist schema: the only tables and columns generated SQL may reference.
Loaded once at process start and immutable afterwards.
"""
import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, FrozenSet

logger = logging.getLogger("whitelist")

Whitelist = Mapping[str, FrozenSet[str]]

DEFAULT_TABLES: Dict[str, Iterable[str]] = {
    "orders":      ("id", "order_number", "customer_id", "amount", "status", "created_at"),
    "customers":   ("id", "first_name", "last_name", "email", "phone"),
    "products":    ("id", "title", "sku", "price", "inventory_quantity", "is_active"),
    "order_items": ("id", "order_id", "product_id", "quantity", "price"),
}


def build_whitelist(tables: Mapping[str, Iterable[str]]) -> Whitelist:
    frozen = {
        str(table).strip().lower(): frozenset(str(c).strip().lower() for c in cols if str(c).strip())
        for table, cols in tables.items()
        if str(table).strip()
    }
    return MappingProxyType(frozen)


def load_whitelist(path: Optional[str] = None) -> Whitelist:
    """Return the default whitelist, or the JSON mapping at `path` when given."""
    if not path:
        return DEFAULT_WHITELIST
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict) or not all(isinstance(v, list) for v in raw.values()):
        raise ValueError(f"Whitelist file {path} must map table names to column lists")
    wl = build_whitelist(raw)
    logger.info("whitelist loaded from %s (%d tables)", path, len(wl))
    return wl


def describe(whitelist: Whitelist) -> str:
    """One `table(col, ...)` line per table, for the generator prompt."""
    return "\n".join(
        f"{table}({', '.join(sorted(cols))})" for table, cols in sorted(whitelist.items())
    )


DEFAULT_WHITELIST: Whitelist = build_whitelist(DEFAULT_TABLES)
