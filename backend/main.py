"""
FastAPI backend for the guarded text-to-SQL messaging gateway.
Run with: uvicorn backend.main:app --port 8000
"""
import os
import uuid
import logging
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / ".env")

from fastapi import FastAPI, Request

from backend.routes import deps
from backend.routes.messages import router as messages_router
from backend.services.runtime import set_request_id, clear_context, shutdown_shared_executor

app = FastAPI(title="SQL Gateway API", version="1.0.0")
logger = logging.getLogger("backend")

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.on_event("shutdown")
def shutdown_gateway():
    deps.shutdown()
    shutdown_shared_executor(wait=False)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed request_id=%s path=%s", request_id, request.url.path)
        raise
    finally:
        clear_context()
    response.headers["x-request-id"] = request_id
    return response


app.include_router(messages_router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
