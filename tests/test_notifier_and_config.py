import json

import httpx
import pytest

from backend.config import GatewaySettings
from backend.services.notifier import NO_DATA_MESSAGE, DeliveryError, WhatsAppNotifier, format_rows


def test_format_rows():
    assert format_rows([]) == NO_DATA_MESSAGE
    assert format_rows([{"id": 1, "note": None}]) == "id: 1 | note: "
    text = format_rows([{"id": i} for i in range(25)], max_rows=20)
    assert text.splitlines()[-1] == "... and 5 more"


def test_format_rows_caps_length():
    text = format_rows([{"blob": "x" * 5000}])
    assert len(text) == 4000
    assert text.endswith("...")


def test_whatsapp_notifier_posts_message():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"messages": [{"id": "wamid.1"}]})

    notifier = WhatsAppNotifier("tok", "555", transport=httpx.MockTransport(handler))
    notifier.send_text("+15550001", "hello")
    assert seen["url"] == "https://graph.facebook.com/v17.0/555/messages"
    assert seen["auth"] == "Bearer tok"
    assert seen["body"] == {"messaging_product": "whatsapp", "to": "+15550001", "text": {"body": "hello"}}
    notifier.close()


def test_whatsapp_notifier_raises_delivery_error():
    notifier = WhatsAppNotifier("tok", "555", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(DeliveryError):
        notifier.send_text("+1", "hello")


_ENV_NAMES = (
    "GENERATOR_ENDPOINT", "GENERATOR_API_KEY", "GEMINI_API_KEY", "GENERATOR_TIMEOUT_S",
    "RATE_LIMIT_PER_MINUTE", "RATE_LIMIT_PER_HOUR", "CACHE_TTL_SECONDS",
    "CACHE_SWEEP_INTERVAL_SECONDS", "DATABASE_URL", "QUERY_MAX_ROWS", "WHITELIST_PATH",
    "WHATSAPP_TOKEN", "WHATSAPP_PHONE_NUMBER_ID",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_settings_defaults(clean_env):
    s = GatewaySettings.from_env()
    assert s.rate_limit_per_minute == 20
    assert s.rate_limit_per_hour == 200
    assert s.cache_ttl_seconds == 600
    assert s.cache_sweep_interval_seconds == 300
    assert s.generator_timeout_s == 8.0
    assert s.generator_enabled is False
    assert s.whatsapp_enabled is False
    assert s.whitelist_path is None


def test_settings_from_env(clean_env):
    clean_env.setenv("GEMINI_API_KEY", "k")
    clean_env.setenv("GENERATOR_TIMEOUT_S", "30")
    clean_env.setenv("CACHE_TTL_SECONDS", "120")
    clean_env.setenv("CACHE_SWEEP_INTERVAL_SECONDS", "900")
    clean_env.setenv("RATE_LIMIT_PER_MINUTE", "not-a-number")
    s = GatewaySettings.from_env()
    assert s.generator_api_key == "k"
    assert s.generator_enabled is True
    assert s.generator_timeout_s == 8.0
    assert s.cache_ttl_seconds == 120
    assert s.cache_sweep_interval_seconds == 120
    assert s.rate_limit_per_minute == 20
