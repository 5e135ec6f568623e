"""
Runtime utilities:
- shared thread pool for wall-clock deadlines, with safe shutdown
- request/identity context for structured logs
- JSON event logging shared by every gateway stage
"""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from contextvars import ContextVar, copy_context
from typing import Any, Callable, Dict, Optional, Set

_LOGGER = logging.getLogger("runtime")

_REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="-")
_IDENTITY: ContextVar[str] = ContextVar("identity", default="-")

_FG_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()
_PENDING_LOCK = threading.Lock()
_PENDING_FUTURES: Set[Future] = set()
_FOREGROUND_WORKERS = max(2, int(os.getenv("APP_FOREGROUND_MAX_WORKERS", "8")))


def get_request_id() -> str:
    return _REQUEST_ID.get() or "-"


def get_identity() -> str:
    return _IDENTITY.get() or "-"


def set_request_id(request_id: Optional[str]) -> str:
    rid = (request_id or "").strip() or str(uuid.uuid4())
    _REQUEST_ID.set(rid)
    return rid


def set_identity(identity: Any) -> str:
    ident = str(identity if identity is not None else "").strip() or "-"
    _IDENTITY.set(ident)
    return ident


def clear_context() -> None:
    _REQUEST_ID.set("-")
    _IDENTITY.set("-")


def structured_fields(**extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "request_id": get_request_id(),
        "identity": get_identity(),
    }
    payload.update(extra)
    return payload


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    payload = structured_fields(event=event, **fields)
    logger.log(level, json.dumps(payload, default=str, ensure_ascii=False))


def _get_fg_executor() -> ThreadPoolExecutor:
    global _FG_EXECUTOR
    if _FG_EXECUTOR is not None:
        return _FG_EXECUTOR
    with _EXECUTOR_LOCK:
        if _FG_EXECUTOR is None:
            _FG_EXECUTOR = ThreadPoolExecutor(max_workers=_FOREGROUND_WORKERS, thread_name_prefix="gateway-fg")
        return _FG_EXECUTOR


def run_with_timeout(fn: Callable[[], Any], timeout_s: float) -> Any:
    """Run `fn` on the shared pool and wait at most `timeout_s` seconds.

    Raises concurrent.futures.TimeoutError when the deadline passes; the worker
    is left to finish on its own. Log context is carried into the worker.
    """
    ctx = copy_context()
    future = _get_fg_executor().submit(ctx.run, fn)
    with _PENDING_LOCK:
        _PENDING_FUTURES.add(future)

    def _done(fut: Future) -> None:
        with _PENDING_LOCK:
            _PENDING_FUTURES.discard(fut)

    future.add_done_callback(_done)
    try:
        return future.result(timeout=max(0.05, float(timeout_s)))
    except FuturesTimeoutError:
        future.cancel()
        raise


def shutdown_shared_executor(wait: bool = False) -> None:
    global _FG_EXECUTOR
    with _EXECUTOR_LOCK:
        if _FG_EXECUTOR is None:
            return
        with _PENDING_LOCK:
            pending = list(_PENDING_FUTURES)
            _PENDING_FUTURES.clear()
        for fut in pending:
            fut.cancel()
        _FG_EXECUTOR.shutdown(wait=wait, cancel_futures=True)
        _FG_EXECUTOR = None
        _LOGGER.info("shared_executor_shutdown")
