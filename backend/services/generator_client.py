"""
Remote SQL generator client.

Thin I/O: one pooled httpx client, one attempt per call, a hard timeout.
Retry and fallback policy belong to the gateway. The response is untrusted
text and always goes through the sanitizer and validator.
"""
from __future__ import annotations

import json
import logging
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Dict, Optional

import httpx

from backend.services.errors import GeneratorError
from backend.services.runtime import log_event, run_with_timeout
from backend.services.whitelist import DEFAULT_WHITELIST, Whitelist, describe

logger = logging.getLogger("generator_client")

MAX_TIMEOUT_S = 8.0

SQL_GENERATION_PROMPT = """You are a SQL generator for a shop database (PostgreSQL).
Hard rules:
- output exactly ONE SELECT statement and nothing else
- no explanations, no comments, no markdown, no code fences, no semicolon
- never write INSERT, UPDATE, DELETE, DROP, ALTER, CREATE or TRUNCATE
- use ONLY these tables and columns:
{schema}
- the requesting customer is customer_id = {identity}; always filter customer data with it

User request: "{question}"

SQL:"""


def build_prompt(question: str, identity: Any, whitelist: Whitelist = DEFAULT_WHITELIST) -> str:
    # Quotes are neutralised so the request cannot break out of its slot.
    safe_question = " ".join((question or "").replace('"', "'").split())
    safe_identity = " ".join(str(identity).replace('"', "").split())
    return SQL_GENERATION_PROMPT.format(
        schema=describe(whitelist),
        identity=safe_identity,
        question=safe_question,
    )


def _extract_text(body_text: str) -> str:
    """Accept a Gemini payload, a small JSON envelope, or plain text."""
    try:
        body = json.loads(body_text)
    except (json.JSONDecodeError, ValueError):
        return body_text or ""
    if isinstance(body, str):
        return body
    if not isinstance(body, dict):
        return ""
    try:
        return str(body["candidates"][0]["content"]["parts"][0]["text"] or "")
    except (KeyError, IndexError, TypeError):
        pass
    for key in ("sql", "text", "output"):
        value = body.get(key)
        if isinstance(value, str):
            return value
    return ""


class GeneratorClient:
    """Calls the text-generation endpoint with a pooled, keep-alive httpx client.

    httpx timeouts bound each connect/read separately, so a server trickling
    bytes could hold a call open indefinitely. The whole call therefore runs
    under `run_with_timeout`, and the body is streamed with a deadline check
    so the worker stops reading once the budget is spent.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        timeout_s: float = MAX_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoint = endpoint
        self._api_key = api_key or ""
        self.timeout_s = min(MAX_TIMEOUT_S, max(0.1, float(timeout_s)))
        self._client = httpx.Client(
            timeout=httpx.Timeout(self.timeout_s),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._api_key and self.endpoint)

    def _post(self, payload: Dict[str, Any], deadline: float) -> str:
        with self._client.stream(
            "POST",
            self.endpoint,
            json=payload,
            headers={"x-goog-api-key": self._api_key},
        ) as response:
            response.raise_for_status()
            chunks = []
            for chunk in response.iter_bytes():
                if time.perf_counter() > deadline:
                    raise httpx.ReadTimeout("generator deadline exceeded", request=response.request)
                chunks.append(chunk)
            return b"".join(chunks).decode(response.charset_encoding or "utf-8", errors="replace")

    def generate(self, prompt: str) -> str:
        if not self.enabled:
            raise GeneratorError("Generator credential is not configured")

        started = time.perf_counter()
        deadline = started + self.timeout_s
        payload = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        try:
            body_text = run_with_timeout(lambda: self._post(payload, deadline), self.timeout_s)
        except (FuturesTimeoutError, httpx.TimeoutException) as exc:
            log_event(logger, logging.WARNING, "generator_timeout", timeout_s=self.timeout_s,
                      elapsed_ms=round((time.perf_counter() - started) * 1000, 2))
            raise GeneratorError(f"generator_timeout_{self.timeout_s}s") from exc
        except httpx.HTTPStatusError as exc:
            log_event(logger, logging.WARNING, "generator_http_error", status=exc.response.status_code)
            raise GeneratorError(f"Generator returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            log_event(logger, logging.WARNING, "generator_transport_error", error=str(exc))
            raise GeneratorError(f"Generator request failed: {exc}") from exc

        text = _extract_text(body_text).strip()
        log_event(logger, logging.INFO, "generator_call_ok",
                  elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
                  prompt_chars=len(prompt), response_chars=len(text))
        if not text:
            raise GeneratorError("Empty response from generator")
        return text

    def close(self) -> None:
        self._client.close()
