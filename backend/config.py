"""
Gateway configuration.
Environment-style settings with sane defaults so the gateway runs without any
explicit configuration (pattern-only / fallback-only when no generator key).
"""
import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_GENERATOR_ENDPOINT = (
    "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent"
)
MAX_GENERATOR_TIMEOUT_S = 8.0


def _env_int(name: str, default: int, minimum: int) -> int:
    try:
        return max(minimum, int(os.getenv(name, str(default))))
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float) -> float:
    try:
        return max(minimum, float(os.getenv(name, str(default))))
    except ValueError:
        return default


@dataclass(frozen=True)
class GatewaySettings:
    generator_endpoint: str = DEFAULT_GENERATOR_ENDPOINT
    generator_api_key: str = ""
    generator_timeout_s: float = MAX_GENERATOR_TIMEOUT_S

    rate_limit_per_minute: int = 20
    rate_limit_per_hour: int = 200

    cache_ttl_seconds: int = 600
    cache_sweep_interval_seconds: int = 300

    database_url: str = "postgresql+psycopg2://localhost:5432/shop"
    query_max_rows: int = 1000
    whitelist_path: Optional[str] = None

    whatsapp_token: str = ""
    whatsapp_phone_number_id: str = ""

    @property
    def generator_enabled(self) -> bool:
        return bool(self.generator_api_key)

    @property
    def whatsapp_enabled(self) -> bool:
        return bool(self.whatsapp_token and self.whatsapp_phone_number_id)

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        ttl = _env_int("CACHE_TTL_SECONDS", 600, 1)
        # Sweeping less often than the TTL lets expired entries pile up.
        sweep = min(ttl, _env_int("CACHE_SWEEP_INTERVAL_SECONDS", 300, 1))
        return cls(
            generator_endpoint=(os.getenv("GENERATOR_ENDPOINT") or DEFAULT_GENERATOR_ENDPOINT).strip(),
            generator_api_key=(os.getenv("GENERATOR_API_KEY") or os.getenv("GEMINI_API_KEY") or "").strip(),
            generator_timeout_s=min(MAX_GENERATOR_TIMEOUT_S, _env_float("GENERATOR_TIMEOUT_S", 8.0, 0.5)),
            rate_limit_per_minute=_env_int("RATE_LIMIT_PER_MINUTE", 20, 1),
            rate_limit_per_hour=_env_int("RATE_LIMIT_PER_HOUR", 200, 1),
            cache_ttl_seconds=ttl,
            cache_sweep_interval_seconds=sweep,
            database_url=(os.getenv("DATABASE_URL") or cls.database_url).strip(),
            query_max_rows=_env_int("QUERY_MAX_ROWS", 1000, 1),
            whitelist_path=(os.getenv("WHITELIST_PATH") or "").strip() or None,
            whatsapp_token=(os.getenv("WHATSAPP_TOKEN") or "").strip(),
            whatsapp_phone_number_id=(os.getenv("WHATSAPP_PHONE_NUMBER_ID") or "").strip(),
        )
