"""FastAPI app for the relay dispatch backend."""

from __future__ import annotations

import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import anyio
import logging
from functools import partial

from app.audit import SecurityAudit
from app.auth import INSTANCE_ID_HEADER, RelayAuthMiddleware
from app.config import load_settings
from app.db import get_db_stats, ping as db_ping_query, reset_db_stats
from app.dispatch import claim_pending_actions, complete_action
from app.errors import RelayError
from app.ingest import Ingestion, ingest_message, missing_fields, reprocess_failed_messages
from app.reaper import StaleLockReaper
from app.replies import ClientAiSettings, OpenAIChatProvider, ReplyGenerationError, ReplyService
from app.secrets import SecretStoreError, has_credentials
from app.stores import (
    InMemoryTxManager,
    MemoryAccountStore,
    MemoryActionStore,
    MemoryAuditStore,
    MemoryClientStore,
    MemoryMessageStore,
)
from app.template_render import validate_template
from app.tenants import verify_account, verify_client
from relay.actions import ACTION_STATUSES, REPLY_STATUSES, action_view, message_view
from relay.ids import is_uuid

logger = logging.getLogger("relay")
logging.basicConfig(level=logging.INFO)

settings = load_settings()
USE_DB = settings.use_db
REQ_SLOW_MS = float(settings.extra.get("req_slow_ms", "250"))

if USE_DB:
    from app.stores_db import (
        DbAccountStore,
        DbActionStore,
        DbAuditStore,
        DbClientStore,
        DbMessageStore,
        DbTxManager,
    )

    account_store = DbAccountStore()
    client_store = DbClientStore()
    action_store = DbActionStore()
    message_store = DbMessageStore()
    audit_store = DbAuditStore()
    tx_mgr = DbTxManager()
else:
    account_store = MemoryAccountStore()
    client_store = MemoryClientStore()
    action_store = MemoryActionStore()
    message_store = MemoryMessageStore()
    audit_store = MemoryAuditStore()
    tx_mgr = InMemoryTxManager()

audit = SecurityAudit(audit_store)
chat_provider = (
    OpenAIChatProvider(
        settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        timeout=settings.openai_timeout,
    )
    if settings.openai_api_key
    else None
)
reply_service = ReplyService(client_store, chat_provider, audit)
logger.info(
    "relay_config app_env=%s use_db=%s reply_provider=%s reaper_enabled=%s",
    settings.app_env,
    USE_DB,
    "openai" if chat_provider else "none",
    settings.reaper_enabled,
)


def _ingestion() -> Ingestion:
    return Ingestion(
        client_store=client_store,
        message_store=message_store,
        action_store=action_store,
        tx_mgr=tx_mgr,
        replies=reply_service,
        audit=audit,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    reaper = None
    if settings.reaper_enabled:
        reaper = StaleLockReaper(action_store, settings, message_store=message_store)
        reaper.start()
    app.state.reaper = reaper
    try:
        yield
    finally:
        if reaper is not None:
            reaper.stop()


app = FastAPI(title="Relay", lifespan=lifespan)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    auth_ms = getattr(request.state, "auth_ms", 0.0)
    db_stats = get_db_stats()
    logger.info(
        "%s %s %s total_ms=%.1f auth_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        total_ms,
        auth_ms,
        db_stats.get("total_ms", 0.0),
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s total_ms=%.1f status=%s",
            request.method,
            request.url.path,
            total_ms,
            response.status_code,
        )
    if settings.is_dev:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
    return response


app.add_middleware(RelayAuthMiddleware, get_settings=lambda: settings)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _relay_error_response(exc: RelayError) -> JSONResponse:
    return _error_response(exc.code, exc.message, exc.path, status=exc.status)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _operator_account_id(request: Request) -> str | None:
    operator = getattr(request.state, "operator", None)
    if isinstance(operator, dict):
        return operator.get("account_id")
    # Operator auth is disabled in dev; fall back to the query string.
    return request.query_params.get("accountId")


async def _verify_account(account_id: object, endpoint: str, source: str = "query") -> None:
    await anyio.to_thread.run_sync(partial(verify_account, account_store, audit, account_id, endpoint, source=source))


async def _verify_client(account_id: str, client_id: str, endpoint: str) -> dict:
    return await anyio.to_thread.run_sync(partial(verify_client, client_store, audit, account_id, client_id, endpoint))


def _limit(request: Request, default: int = 50, maximum: int = 200) -> int:
    raw = request.query_params.get("limit")
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(1, min(value, maximum))


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get("/ops/db_ping")
async def db_ping() -> JSONResponse:
    if not USE_DB:
        return _ok_response({"store": "memory", "ms": 0.0})
    start = time.perf_counter()
    reachable = await anyio.to_thread.run_sync(db_ping_query)
    elapsed_ms = (time.perf_counter() - start) * 1000
    if not reachable:
        return _error_response("DB_UNAVAILABLE", "Database is unreachable", status=503)
    return _ok_response({"store": "postgres", "ms": round(elapsed_ms, 2)})


# Agent surface (X-Extension-Key)


@app.get("/api/actions/pending")
async def get_pending_actions(request: Request) -> JSONResponse:
    endpoint = "/api/actions/pending"
    account_id = request.query_params.get("accountId")
    lock_owner = request.headers.get(INSTANCE_ID_HEADER) or None
    try:
        await _verify_account(account_id, endpoint)
        claimed = await anyio.to_thread.run_sync(
            partial(claim_pending_actions, action_store, account_id, settings, lock_owner=lock_owner)
        )
    except RelayError as exc:
        return _relay_error_response(exc)
    return _ok_response({"actions": claimed})


@app.post("/api/actions/{action_id}/complete")
async def complete_action_route(action_id: str, request: Request) -> JSONResponse:
    endpoint = "/api/actions/complete"
    body = await _safe_json(request)
    account_id = request.query_params.get("accountId") or body.get("accountId")
    success = body.get("success")
    if not isinstance(success, bool):
        return _error_response("VALIDATION_ERROR", "success must be a boolean", "success")
    error_code = body.get("errorCode")
    error_message = body.get("errorMessage")
    if error_code is not None and not isinstance(error_code, str):
        return _error_response("VALIDATION_ERROR", "errorCode must be a string", "errorCode")
    try:
        await _verify_account(account_id, endpoint)
        result = await anyio.to_thread.run_sync(
            partial(
                complete_action,
                action_store,
                message_store,
                audit,
                account_id,
                action_id,
                success,
                settings,
                error_code=error_code,
                error_message=str(error_message) if error_message is not None else None,
                lock_owner=request.headers.get(INSTANCE_ID_HEADER) or None,
                endpoint=endpoint,
            )
        )
    except RelayError as exc:
        return _relay_error_response(exc)
    return _ok_response({"success": True, "willRetry": result.will_retry})


@app.post("/api/messages/incoming")
async def incoming_message(request: Request) -> JSONResponse:
    endpoint = "/api/messages/incoming"
    body = await _safe_json(request)
    account_id = body.get("accountId") or request.query_params.get("accountId")
    missing = missing_fields(body)
    if missing:
        return _error_response(
            "VALIDATION_ERROR",
            "Missing required fields",
            missing[0],
            {"missing": missing},
        )
    try:
        await _verify_account(account_id, endpoint, source="body")
        result = await anyio.to_thread.run_sync(
            partial(
                ingest_message,
                _ingestion(),
                account_id,
                str(body["clientId"]),
                str(body["conversationId"]),
                str(body["senderName"]),
                str(body["incomingText"]),
                str(body["idempotencyKey"]),
                endpoint=endpoint,
            )
        )
    except RelayError as exc:
        return _relay_error_response(exc)
    except ReplyGenerationError as exc:
        return _error_response("REPLY_GENERATION_FAILED", "Failed to generate reply", "incomingText", {"error": str(exc)}, status=502)
    return _ok_response(
        {
            "messageId": result.message_id,
            "actionId": result.action_id,
            "duplicate": result.duplicate,
            "replyStatus": result.reply_status,
        }
    )


# Operator surface (Bearer JWT)


@app.get("/api/actions")
async def list_actions(request: Request) -> JSONResponse:
    endpoint = "/api/actions"
    account_id = _operator_account_id(request)
    status = request.query_params.get("status") or None
    if status and status not in ACTION_STATUSES:
        return _error_response("VALIDATION_ERROR", "Unknown action status", "status", {"allowed": sorted(ACTION_STATUSES)})
    try:
        await _verify_account(account_id, endpoint, source="token")
    except RelayError as exc:
        return _relay_error_response(exc)
    items = await anyio.to_thread.run_sync(partial(action_store.list, account_id, status=status, limit=_limit(request)))
    return _ok_response({"actions": [action_view(a) for a in items]})


@app.get("/api/actions/{action_id}")
async def get_action(action_id: str, request: Request) -> JSONResponse:
    endpoint = "/api/actions/{id}"
    account_id = _operator_account_id(request)
    try:
        await _verify_account(account_id, endpoint, source="token")
    except RelayError as exc:
        return _relay_error_response(exc)
    if not is_uuid(action_id):
        return _error_response("ACTION_ID_INVALID", "Invalid actionId format", "id")
    action = await anyio.to_thread.run_sync(action_store.get, account_id, action_id)
    if not action:
        await anyio.to_thread.run_sync(audit.log_cross_account_access, endpoint, account_id, "Action", action_id)
        return _error_response("ACTION_NOT_FOUND", "Action not found", "id", status=404)
    return _ok_response({"action": action_view(action)})


@app.get("/api/messages")
async def list_messages(request: Request) -> JSONResponse:
    endpoint = "/api/messages"
    account_id = _operator_account_id(request)
    client_id = request.query_params.get("clientId") or None
    reply_status = request.query_params.get("replyStatus") or None
    if reply_status and reply_status not in REPLY_STATUSES:
        return _error_response("VALIDATION_ERROR", "Unknown reply status", "replyStatus", {"allowed": sorted(REPLY_STATUSES)})
    try:
        await _verify_account(account_id, endpoint, source="token")
        if client_id:
            await _verify_client(account_id, client_id, endpoint)
    except RelayError as exc:
        return _relay_error_response(exc)
    items = await anyio.to_thread.run_sync(
        partial(
            message_store.list,
            account_id,
            client_id=client_id,
            reply_statuses=[reply_status] if reply_status else None,
            limit=_limit(request),
        )
    )
    return _ok_response({"messages": [message_view(m) for m in items]})


@app.post("/api/messages/reprocess")
async def reprocess_messages(request: Request) -> JSONResponse:
    endpoint = "/api/messages/reprocess"
    body = await _safe_json(request)
    account_id = _operator_account_id(request)
    try:
        await _verify_account(account_id, endpoint, source="token")
        summary = await anyio.to_thread.run_sync(
            partial(reprocess_failed_messages, _ingestion(), account_id, body.get("clientId"))
        )
    except RelayError as exc:
        return _relay_error_response(exc)
    return _ok_response(summary)


@app.get("/api/clients/{client_id}/ai-config")
async def get_client_ai_config(client_id: str, request: Request) -> JSONResponse:
    endpoint = "/api/clients/{id}/ai-config"
    account_id = _operator_account_id(request)
    try:
        await _verify_account(account_id, endpoint, source="token")
        client = await _verify_client(account_id, client_id, endpoint)
    except RelayError as exc:
        return _relay_error_response(exc)
    ai = ClientAiSettings.from_record(client)
    try:
        credentials_stored = has_credentials(client)
    except SecretStoreError as exc:
        logger.error("client_credentials_unreadable client_id=%s error=%s", client_id, exc)
        return _error_response("SECRETS_UNAVAILABLE", "Stored credentials could not be read", status=500)
    return _ok_response(
        {
            "config": {
                "clientId": client_id,
                "aiActive": ai.ai_active,
                "aiProvider": ai.ai_provider,
                "persona": ai.persona,
                "documents": ai.documents,
                "hasReplyTemplate": bool(ai.reply_template),
                "replyTemplateError": validate_template(ai.reply_template),
                "hasCredentials": credentials_stored,
                "totalReplies": int(client.get("total_replies") or 0),
            }
        }
    )
