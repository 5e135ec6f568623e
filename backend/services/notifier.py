"""
Outbound delivery collaborator.

The gateway only hands over a finished text payload; delivery (and whether to
retry it) is the notifier's business.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from backend.services.runtime import log_event

logger = logging.getLogger("notifier")

GRAPH_API_URL = "https://graph.facebook.com/v17.0/{phone_number_id}/messages"

NO_DATA_MESSAGE = "No data found."
REFUSAL_MESSAGE = "Sorry, I can't answer that request. Please try rephrasing it."
ERROR_MESSAGE = "Sorry, something went wrong while fetching your data. Please try again later."
RATE_LIMIT_MESSAGE = "You're sending requests too quickly. Please try again in {seconds} seconds."

MAX_MESSAGE_CHARS = 4000
MAX_ROWS_IN_MESSAGE = 20


class DeliveryError(Exception):
    """Raised when a message could not be delivered."""


class Notifier(Protocol):
    def send_text(self, to: str, message: str) -> None: ...


def format_rows(rows: List[Dict[str, Any]], max_rows: int = MAX_ROWS_IN_MESSAGE) -> str:
    """Render rows as compact `col: value | col: value` lines."""
    if not rows:
        return NO_DATA_MESSAGE
    lines = [
        " | ".join(f"{k}: {'' if v is None else v}" for k, v in row.items())
        for row in rows[:max_rows]
    ]
    if len(rows) > max_rows:
        lines.append(f"... and {len(rows) - max_rows} more")
    text = "\n".join(lines)
    if len(text) > MAX_MESSAGE_CHARS:
        text = text[:MAX_MESSAGE_CHARS - 3] + "..."
    return text


class NullNotifier:
    """Used when no messaging channel is configured."""

    def send_text(self, to: str, message: str) -> None:
        log_event(logger, logging.DEBUG, "notify_skipped", chars=len(message))


class WhatsAppNotifier:
    def __init__(self, token: str, phone_number_id: str, timeout_s: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self._url = GRAPH_API_URL.format(phone_number_id=phone_number_id)
        self._client = httpx.Client(
            timeout=timeout_s,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            transport=transport,
        )

    def send_text(self, to: str, message: str) -> None:
        payload = {"messaging_product": "whatsapp", "to": to, "text": {"body": message}}
        try:
            self._client.post(self._url, json=payload).raise_for_status()
        except httpx.HTTPError as exc:
            log_event(logger, logging.ERROR, "whatsapp_send_failed", error=str(exc))
            raise DeliveryError("Failed to send WhatsApp message") from exc
        log_event(logger, logging.INFO, "whatsapp_sent", chars=len(message))

    def close(self) -> None:
        self._client.close()
