"""
REST API for the campaign engine.
Pipeline: WAHA -> POST /webhook/waha -> CampaignEngine -> WAHA sendText

Run: API_KEY=<secret> uvicorn campaign_engine.api:app --host 127.0.0.1 --port 8000

The webhook always acknowledges with 200 unless processing failed
unexpectedly (then 500, so the provider redelivers). Admin endpoints
(/api/v1/...) require a Bearer API key.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from campaign_engine.engine import (
    Campaign,
    CampaignGraph,
    CampaignStatus,
    GraphConfigError,
    RoutingError,
    build_engine,
)
from campaign_engine.llm import GeminiClient
from campaign_engine.settings import settings
from campaign_engine.waha import WahaClient

logger = logging.getLogger(__name__)

API_KEY = os.environ.get("API_KEY", "change-me-in-production")
DB_PATH = os.environ.get("DB_PATH", settings.storage.db_path)
WEBHOOK_HMAC_KEY = os.environ.get("WEBHOOK_HMAC_KEY", "")
SSE_KEEPALIVE_SECONDS = 15

_engine = None


# ── Error helpers ──────────────────────────────────────

class APIError(Exception):
    """Structured API exception with HTTP status code."""

    def __init__(self, status_code: int, code: str, message: str, details: Optional[list] = None):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


def _error_payload(code: str, message: str, details: Optional[list] = None) -> dict:
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"error": error}


# ── Auth ──────────────────────────────────────────────

def verify_api_key(authorization: str = Header(...)):
    """Bearer token check."""
    if not authorization.startswith("Bearer "):
        raise APIError(401, "UNAUTHORIZED", "Missing Bearer token")
    token = authorization[7:]
    if not hmac.compare_digest(token, API_KEY):
        raise APIError(401, "UNAUTHORIZED", "Invalid API key")


def _verify_webhook_signature(raw: bytes, signature: Optional[str]) -> None:
    if not WEBHOOK_HMAC_KEY:
        return
    expected = hmac.new(WEBHOOK_HMAC_KEY.encode("utf-8"), raw, hashlib.sha512).hexdigest()
    if not signature or not hmac.compare_digest(signature, expected):
        raise APIError(401, "UNAUTHORIZED", "Invalid webhook signature")


def _get_engine():
    if _engine is None:
        raise APIError(503, "UNAVAILABLE", "Engine not initialized")
    return _engine


# ── App ───────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    global _engine
    if API_KEY == "change-me-in-production":
        logger.warning("API_KEY is set to insecure default value")
    _engine = build_engine(db_path=DB_PATH, llm=GeminiClient(), transport=WahaClient())
    logger.info("Campaign engine initialized, DB ready at %s", DB_PATH)
    yield
    _engine = None


app = FastAPI(title="Campaign Engine API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(APIError)
async def api_error_handler(_: Request, exc: APIError):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(exc.code, exc.message, exc.details),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    first_error = errors[0].get("msg") if errors else "Invalid request payload"
    return JSONResponse(
        status_code=400,
        content=_error_payload("BAD_REQUEST", first_error),
    )


# ── Models ────────────────────────────────────────────

class CampaignCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: str
    session_name: str = Field(alias="sessionName")
    reentry_after_close: bool = Field(
        default=settings.engine.default_reentry_after_close, alias="reentryAfterClose",
    )
    agent_instructions: str = Field(default="", alias="agentInstructions")
    model: Optional[str] = None
    company_id: Optional[str] = Field(default=None, alias="companyId")
    graph: Optional[Dict[str, Any]] = None


class StatusUpdate(BaseModel):
    status: CampaignStatus


# ── Helpers ───────────────────────────────────────────

def _publish(campaign_id: str, payload: Dict[str, Any]) -> int:
    engine = _get_engine()
    try:
        graph = CampaignGraph.from_dict(payload)
        return engine.campaigns.publish_graph(campaign_id, graph)
    except GraphConfigError as err:
        raise APIError(400, "INVALID_GRAPH", str(err), details=err.issues or None) from err


def _require_campaign(campaign_id: str) -> Campaign:
    campaign = _get_engine().campaigns.get(campaign_id)
    if campaign is None:
        raise APIError(404, "NOT_FOUND", f"Campaign '{campaign_id}' not found")
    return campaign


# ── Endpoints ─────────────────────────────────────────

@app.get("/health")
def health():
    return {"status": "ok", "engine": _engine is not None}


@app.post("/webhook/{provider}")
async def webhook(provider: str, request: Request):
    """
    Inbound provider webhook.

    The engine call is blocking (SQLite, file locks, LLM and transport HTTP),
    so it runs in the threadpool; the body is read raw for signature checks.
    """
    raw = await request.body()
    _verify_webhook_signature(raw, request.headers.get("X-Webhook-Hmac"))

    try:
        body = json.loads(raw) if raw else None
    except ValueError:
        logger.warning("Webhook body is not JSON (provider=%s)", provider)
        return {"status": "invalid", "reason": "body is not JSON"}

    engine = _get_engine()
    try:
        result = await run_in_threadpool(engine.handle_webhook, provider, body)
    except Exception as err:
        logger.exception("Error processing webhook")
        raise APIError(500, "INTERNAL", "Internal server error") from err
    return result.to_dict()


@app.post("/api/v1/campaigns", dependencies=[Depends(verify_api_key)], status_code=201)
def create_campaign(req: CampaignCreate):
    engine = _get_engine()
    campaign_id = req.id or os.urandom(8).hex()
    if engine.campaigns.get(campaign_id, with_graph=False) is not None:
        raise APIError(409, "CONFLICT", f"Campaign '{campaign_id}' already exists")

    engine.campaigns.save(Campaign(
        id=campaign_id,
        name=req.name,
        session_name=req.session_name,
        status=CampaignStatus.DRAFT,
        reentry_after_close=req.reentry_after_close,
        agent_instructions=req.agent_instructions,
        model=req.model,
        company_id=req.company_id,
    ))
    if req.graph is not None:
        _publish(campaign_id, req.graph)
    return _require_campaign(campaign_id).to_dict()


@app.get("/api/v1/campaigns/{campaign_id}", dependencies=[Depends(verify_api_key)])
def get_campaign(campaign_id: str):
    return _require_campaign(campaign_id).to_dict()


@app.put("/api/v1/campaigns/{campaign_id}/graph", dependencies=[Depends(verify_api_key)])
def publish_graph(campaign_id: str, payload: Dict[str, Any] = Body(...)):
    """Publish a new graph version. Running conversations keep their node ids."""
    _require_campaign(campaign_id)
    version = _publish(campaign_id, payload)
    return {"id": campaign_id, "graphVersion": version}


@app.post("/api/v1/campaigns/{campaign_id}/status", dependencies=[Depends(verify_api_key)])
def set_campaign_status(campaign_id: str, req: StatusUpdate):
    engine = _get_engine()
    try:
        campaign = engine.router.set_status(campaign_id, req.status)
    except RoutingError as err:
        raise APIError(409, "CONFLICT", str(err), details=err.campaign_ids or None) from err
    except GraphConfigError as err:
        raise APIError(400, "INVALID_GRAPH", str(err)) from err
    if campaign is None:
        raise APIError(404, "NOT_FOUND", f"Campaign '{campaign_id}' not found")
    return campaign.to_dict(include_graph=False)


@app.get(
    "/api/v1/campaigns/{campaign_id}/conversations/{chat_id}",
    dependencies=[Depends(verify_api_key)],
)
def get_conversation(campaign_id: str, chat_id: str):
    _require_campaign(campaign_id)
    state = _get_engine().states.load(campaign_id, chat_id)
    if state is None:
        raise APIError(404, "NOT_FOUND", "No conversation for this chat")
    return state.to_dict()


@app.get("/api/v1/events", dependencies=[Depends(verify_api_key)])
async def stream_events(request: Request):
    """Server-sent events for the dashboard."""
    notifier = _get_engine().notifier
    queue = notifier.subscribe(asyncio.get_running_loop())

    async def generate():
        try:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                data = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
                yield f"event: {event.name}\ndata: {data}\n\n"
        finally:
            notifier.unsubscribe(queue)

    return StreamingResponse(generate(), media_type="text/event-stream")
