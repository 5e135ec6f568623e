"""Shared value types passed between gateway stages."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

QueryResult = List[Dict[str, Any]]


@dataclass(frozen=True)
class GeneratedQuery:
    """SQL with `?` positional placeholders and the values that fill them, in order."""
    sql:    str
    params: Tuple[Any, ...] = field(default=())

    def with_sql(self, sql: str) -> "GeneratedQuery":
        return GeneratedQuery(sql=sql, params=self.params)


@dataclass
class GatewayResult:
    rows:       QueryResult
    sql:        str
    source:     str          # cache | pattern | generator | fallback
    elapsed_ms: int = 0

    @property
    def row_count(self) -> int:
        return len(self.rows)
