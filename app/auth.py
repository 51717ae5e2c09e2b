"""Request authentication for the agent and operator surfaces.

The browser extension presents a shared secret in ``X-Extension-Key``;
operator dashboards present an HS256 bearer token whose ``sub`` (or ``id``)
claim is their account id.
"""

from __future__ import annotations

import hmac
import logging
import os
import re
import time
from typing import Callable, Optional

from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.config import Settings

logger = logging.getLogger("relay.auth")

EXTENSION_KEY_HEADER = "X-Extension-Key"
INSTANCE_ID_HEADER = "X-Extension-Instance-Id"

_AGENT_ROUTES = (
    re.compile(r"^/api/actions/pending/?$"),
    re.compile(r"^/api/actions/[^/]+/complete/?$"),
    re.compile(r"^/api/messages/incoming/?$"),
)
_PUBLIC_PATHS = {"/health", "/ops/db_ping", "/docs", "/openapi.json"}


def _auth_error(code: str, message: str, path: str, status: int, detail: dict | None = None) -> JSONResponse:
    return JSONResponse(
        {
            "ok": False,
            "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
            "warnings": [],
        },
        status_code=status,
    )


def is_agent_route(path: str) -> bool:
    return any(pattern.match(path) for pattern in _AGENT_ROUTES)


def check_extension_key(configured: str | None, presented: str | None) -> tuple[str, str, int] | None:
    """Return ``(code, message, status)`` when the key is rejected, else None."""
    if not configured:
        return ("EXTENSION_KEY_NOT_CONFIGURED", "Server configuration error", 500)
    if not presented or not hmac.compare_digest(presented.encode("utf-8"), configured.encode("utf-8")):
        return ("EXTENSION_KEY_INVALID", "Unauthorized: invalid extension key", 401)
    return None


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def issue_operator_token(secret: str, account_id: str, ttl_seconds: int = 3600) -> str:
    now = int(time.time())
    return jwt.encode({"sub": account_id, "iat": now, "exp": now + ttl_seconds}, secret, algorithm="HS256")


def verify_operator_token(token: str, secret: str) -> dict:
    claims = jwt.decode(token, secret, algorithms=["HS256"])
    account_id = claims.get("sub") or claims.get("id")
    if not account_id:
        raise JWTError("Token has no account claim")
    return {"account_id": str(account_id), "claims": claims}


class RelayAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, get_settings: Callable[[], Settings]) -> None:
        super().__init__(app)
        self._get_settings = get_settings

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        path = request.url.path
        if request.method == "OPTIONS" or path in _PUBLIC_PATHS or not path.startswith("/api/"):
            return await call_next(request)
        settings = self._get_settings()

        if is_agent_route(path):
            rejected = check_extension_key(settings.extension_api_key, request.headers.get(EXTENSION_KEY_HEADER))
            if rejected:
                code, message, status = rejected
                if status == 500:
                    logger.error("auth_extension_key_not_configured path=%s", path)
                else:
                    logger.warning("auth_extension_key_invalid path=%s", path)
                return _auth_error(code, message, EXTENSION_KEY_HEADER, status)
            request.state.agent = {"instance_id": request.headers.get(INSTANCE_ID_HEADER)}
            request.state.auth_ms = (time.perf_counter() - start) * 1000
            return await call_next(request)

        if os.getenv("RELAY_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes") and settings.is_dev:
            return await call_next(request)
        if not settings.jwt_secret:
            logger.error("auth_jwt_secret_not_configured path=%s", path)
            return _auth_error("AUTH_NOT_CONFIGURED", "Server configuration error", "Authorization", 500)
        token = _get_bearer_token(request)
        if not token:
            logger.warning("auth_missing_token path=%s", path)
            return _auth_error("AUTH_MISSING_TOKEN", "Missing bearer token", "Authorization", 401)
        try:
            operator = verify_operator_token(token, settings.jwt_secret)
        except JWTError as exc:
            logger.warning("auth_invalid_token path=%s error=%s", path, exc)
            return _auth_error("AUTH_INVALID_TOKEN", "Invalid bearer token", "Authorization", 401, {"error": str(exc)})
        request.state.operator = operator
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        return await call_next(request)
