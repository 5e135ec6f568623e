"""Inbound messages: one request in, one text payload handed to the notifier."""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.routes.deps import get_gateway, get_notifier
from backend.services.errors import ExecutionError, RateLimited, ValidationRejected
from backend.services.gateway import Gateway
from backend.services.notifier import (
    DeliveryError,
    ERROR_MESSAGE,
    RATE_LIMIT_MESSAGE,
    REFUSAL_MESSAGE,
    Notifier,
    format_rows,
)
from backend.services.runtime import log_event

router = APIRouter(prefix="/api/messages", tags=["messages"])
logger = logging.getLogger("messages_route")


class MessageRequest(BaseModel):
    phone: str = ""
    text:  str = ""


class MessageResponse(BaseModel):
    success:   bool
    source:    str
    row_count: int
    rows:      List[Dict[str, Any]]


def _notify(notifier: Notifier, to: str, message: str) -> None:
    try:
        notifier.send_text(to, message)
    except DeliveryError as exc:
        log_event(logger, logging.ERROR, "notify_failed", error=str(exc))


@router.post("", response_model=MessageResponse)
def submit_message(
    req: MessageRequest,
    gateway: Gateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    phone = req.phone.strip()
    text = req.text.strip()
    if not phone or not text:
        raise HTTPException(400, "phone and text are required")

    log_event(logger, logging.INFO, "message_received", chars=len(text))
    try:
        result = gateway.submit_request(phone, text)
    except RateLimited as exc:
        _notify(notifier, phone, RATE_LIMIT_MESSAGE.format(seconds=exc.retry_after_seconds))
        return JSONResponse(
            status_code=429,
            content={"error": "rate_limited", "retry_after_seconds": exc.retry_after_seconds},
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )
    except ValidationRejected:
        _notify(notifier, phone, REFUSAL_MESSAGE)
        return JSONResponse(status_code=422, content={"error": "Generated SQL not allowed"})
    except ExecutionError:
        _notify(notifier, phone, ERROR_MESSAGE)
        return JSONResponse(status_code=502, content={"error": "Query failed"})

    _notify(notifier, phone, format_rows(result.rows))
    return MessageResponse(success=True, source=result.source, row_count=result.row_count, rows=result.rows)
