"""
Guarded text-to-SQL gateway.

Request pipeline:
1) rate limit (reserve a slot or refuse with a retry hint)
2) response cache
3) pattern fast-path
4) remote generation, falling back to a conservative default on failure
5) sanitize -> validate (nothing unvalidated is ever executed or cached)
6) execute with positional params
"""
from __future__ import annotations

import logging
import time
from typing import Any, Optional, Protocol, Sequence

from backend.config import GatewaySettings
from backend.services.db_utils import QueryExecutor, create_store_engine
from backend.services.errors import ExecutionError, GeneratorError, RateLimited, ValidationRejected
from backend.services.generator_client import GeneratorClient, build_prompt
from backend.services.intent_patterns import match_intent
from backend.services.models import GatewayResult, GeneratedQuery, QueryResult
from backend.services.rate_limiter import RateLimiter
from backend.services.response_cache import ResponseCache
from backend.services.runtime import log_event, set_identity
from backend.services.sql_sanitizer import clean_sql
from backend.services.sql_validator import validate_generated_sql
from backend.services.whitelist import DEFAULT_WHITELIST, Whitelist, load_whitelist

logger = logging.getLogger("gateway")

DEFAULT_FALLBACK_SQL = "SELECT * FROM orders WHERE customer_id = ? ORDER BY created_at DESC LIMIT 10"

SOURCE_CACHE = "cache"
SOURCE_PATTERN = "pattern"
SOURCE_GENERATOR = "generator"
SOURCE_FALLBACK = "fallback"


class SqlGenerator(Protocol):
    def generate(self, prompt: str) -> str: ...


class Store(Protocol):
    def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult: ...


def _elapsed_ms(start_ts: float) -> int:
    return int((time.perf_counter() - start_ts) * 1000)


def fallback_query(identity: Any) -> GeneratedQuery:
    """Most recent orders for the identity; used when generation fails."""
    return GeneratedQuery(sql=DEFAULT_FALLBACK_SQL, params=(identity,))


class Gateway:
    """Owns the limiter and cache state; collaborators are injected."""

    def __init__(
        self,
        *,
        executor: Store,
        generator: Optional[SqlGenerator] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[ResponseCache] = None,
        whitelist: Whitelist = DEFAULT_WHITELIST,
    ):
        self.executor = executor
        self.generator = generator
        self.rate_limiter = rate_limiter or RateLimiter()
        self.cache = cache or ResponseCache()
        self.whitelist = whitelist

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        self.cache.start()

    def stop(self) -> None:
        self.cache.stop()

    def close(self) -> None:
        self.stop()
        close = getattr(self.generator, "close", None)
        if callable(close):
            close()

    # -- stages ------------------------------------------------------------------

    def _generate(self, text: str, identity: Any) -> GeneratedQuery:
        if self.generator is None:
            raise GeneratorError("No generator configured")
        raw = self.generator.generate(build_prompt(text, identity, self.whitelist))
        # Generated SQL embeds the identity as a literal filter; there are no params.
        return GeneratedQuery(sql=raw)

    def _resolve(self, identity: Any, text: str, stamp: Optional[float]):
        cached = self.cache.get(identity, text)
        if cached is not None:
            log_event(logger, logging.INFO, "cache_hit")
            return cached, SOURCE_CACHE

        pattern = match_intent(text, identity)
        if pattern is not None:
            log_event(logger, logging.INFO, "pattern_hit", sql=pattern.sql)
            return pattern.with_sql(clean_sql(pattern.sql)), SOURCE_PATTERN

        try:
            generated = self._generate(text, identity)
        except GeneratorError as exc:
            # Upstream failure must not cost the user quota. Pattern-only
            # deployments (no generator at all) keep normal accounting.
            if self.generator is not None:
                self.rate_limiter.release(identity, stamp)
            log_event(logger, logging.WARNING, "generator_failed_fallback", prompt=text, error=str(exc))
            fallback = fallback_query(identity)
            return fallback.with_sql(clean_sql(fallback.sql)), SOURCE_FALLBACK

        sql = clean_sql(generated.sql)
        log_event(logger, logging.INFO, "generator_sql", prompt=text, raw_chars=len(generated.sql), sql=sql)
        return generated.with_sql(sql), SOURCE_GENERATOR

    def submit_request(self, identity: Any, text: str) -> GatewayResult:
        """Turn a free-text request into rows.

        Raises RateLimited, ValidationRejected or ExecutionError. Generator
        failures are recovered here and never reach the caller.
        """
        start_ts = time.perf_counter()
        set_identity(identity)

        decision = self.rate_limiter.admit(identity)
        if not decision.allowed:
            raise RateLimited(decision.retry_after_seconds or 1, decision.scope or "minute")

        query, source = self._resolve(identity, text, decision.stamp)

        verdict = validate_generated_sql(query.sql, self.whitelist)
        if not verdict.valid:
            log_event(
                logger, logging.WARNING, "sql_rejected",
                source=source, prompt=text, sql=query.sql, reason=verdict.reason,
            )
            raise ValidationRejected(verdict.reason, query.sql)

        if source in (SOURCE_PATTERN, SOURCE_GENERATOR):
            self.cache.put(identity, text, query)

        try:
            rows = self.executor.execute(query.sql, query.params)
        except ExecutionError:
            log_event(logger, logging.ERROR, "execution_failed", source=source, sql=query.sql)
            raise

        elapsed = _elapsed_ms(start_ts)
        log_event(logger, logging.INFO, "request_done", source=source, row_count=len(rows), elapsed_ms=elapsed)
        return GatewayResult(rows=rows, sql=query.sql, source=source, elapsed_ms=elapsed)


def build_gateway(settings: Optional[GatewaySettings] = None) -> Gateway:
    """Wire the default object graph from settings."""
    settings = settings or GatewaySettings.from_env()
    whitelist = load_whitelist(settings.whitelist_path)

    generator: Optional[GeneratorClient] = None
    if settings.generator_enabled:
        generator = GeneratorClient(
            settings.generator_endpoint,
            settings.generator_api_key,
            timeout_s=settings.generator_timeout_s,
        )
    else:
        logger.warning("GENERATOR_API_KEY not set; running pattern/fallback only")

    executor = QueryExecutor(create_store_engine(settings.database_url), max_rows=settings.query_max_rows)
    return Gateway(
        executor=executor,
        generator=generator,
        rate_limiter=RateLimiter(settings.rate_limit_per_minute, settings.rate_limit_per_hour),
        cache=ResponseCache(settings.cache_ttl_seconds, settings.cache_sweep_interval_seconds),
        whitelist=whitelist,
    )
