"""Loopback HTTP endpoint used by the browser helper to enrich the live activity."""

from __future__ import annotations

import hmac
import json
import logging
import secrets
import threading
import time
from typing import Any, Callable, Optional, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__
from .config import (
    BROWSER_ACTIVITY_MAX_BYTES,
    PAGE_CONTEXT_MAX_BYTES,
    RATE_LIMIT_PER_MINUTE,
    RATE_LIMIT_WINDOW_SECONDS,
)
from .tracker import ActivityTracker

logger = logging.getLogger(__name__)

EXTENSION_ORIGIN_PREFIXES = ("chrome-extension://", "moz-extension://", "safari-extension://")
ALLOWED_METHODS = "GET, POST, OPTIONS"
ALLOWED_HEADERS = "Content-Type, Authorization"

MAX_URL_LENGTH = 2000
MAX_TITLE_LENGTH = 500
MAX_BROWSER_LENGTH = 50
MAX_CONTEXT_TYPE_LENGTH = 50
MAX_JIRA_FIELD_LENGTH = 500
MAX_GITHUB_REPO_LENGTH = 200
MAX_GITHUB_OWNER_LENGTH = 100
MAX_GITHUB_TYPE_LENGTH = 50


def new_session_token() -> str:
    return secrets.token_hex(32)


def is_extension_origin(origin: Optional[str]) -> bool:
    return bool(origin) and origin.startswith(EXTENSION_ORIGIN_PREFIXES)


class RateLimiter:
    """Fixed-window request counter keyed by path."""

    def __init__(
        self,
        limit: int = RATE_LIMIT_PER_MINUTE,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    def is_limited(self, key: str) -> bool:
        now = self._monotonic()
        with self._lock:
            self._evict_expired(now)
            window_start, count = self._windows.get(key, (now, 0))
            count += 1
            self._windows[key] = (window_start, count)
            return count > self.limit

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (start, _) in self._windows.items() if now - start > self.window_seconds]
        for key in expired:
            del self._windows[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class IngressGuardMiddleware(BaseHTTPMiddleware):
    """Origin check, rate limit and CORS headers for every request."""

    def __init__(self, app, *, rate_limiter: RateLimiter) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self._rate_limiter = rate_limiter

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        origin = request.headers.get("origin")
        if self._rate_limiter.is_limited(request.url.path):
            logger.warning("Rate limit exceeded for %s", request.url.path)
            return Response(status_code=429)

        if request.method not in ("GET", "OPTIONS") and origin and not is_extension_origin(origin):
            logger.warning("Rejected request from disallowed origin: %s", origin)
            return JSONResponse({"error": "Forbidden: Invalid origin"}, status_code=403)

        if request.method == "OPTIONS":
            response: Response = Response(status_code=200)
        else:
            response = await call_next(request)

        if is_extension_origin(origin):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
        response.headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS
        response.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS
        return response


class BrowserActivityPayload(BaseModel):
    url: str
    title: str
    browser: str = "Unknown"
    timestamp: Optional[Union[str, float]] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("url", "title", "browser", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None or isinstance(value, (dict, list)):
            return value
        return str(value)

    @model_validator(mode="after")
    def _sanitize(self) -> "BrowserActivityPayload":
        if not self.url or not self.title:
            raise ValueError("url and title are required")
        self.url = self.url[:MAX_URL_LENGTH]
        self.title = self.title[:MAX_TITLE_LENGTH]
        self.browser = (self.browser or "Unknown")[:MAX_BROWSER_LENGTH]
        return self


class PageContextPayload(BaseModel):
    url: str = ""
    type: str = ""
    data: dict[str, Any] = {}

    model_config = ConfigDict(extra="ignore")

    @field_validator("url", "type", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("data", mode="before")
    @classmethod
    def _object_only(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @model_validator(mode="after")
    def _sanitize(self) -> "PageContextPayload":
        self.url = self.url[:MAX_URL_LENGTH]
        self.type = self.type[:MAX_CONTEXT_TYPE_LENGTH]
        self.data = sanitize_context_data(self.type, self.data)
        return self


def _text(data: dict[str, Any], key: str, limit: int) -> str:
    value = data.get(key)
    return str(value)[:limit] if value else ""


def sanitize_context_data(kind: str, data: dict[str, Any]) -> dict[str, Any]:
    if kind == "jira":
        return {key: _text(data, key, MAX_JIRA_FIELD_LENGTH) for key in ("issueKey", "summary", "projectKey", "status")}
    if kind == "github":
        try:
            number: Optional[int] = int(data["number"]) if data.get("number") else None
        except (TypeError, ValueError):
            number = None
        return {
            "repo": _text(data, "repo", MAX_GITHUB_REPO_LENGTH),
            "owner": _text(data, "owner", MAX_GITHUB_OWNER_LENGTH),
            "type": _text(data, "type", MAX_GITHUB_TYPE_LENGTH),
            "number": number,
        }
    return {}


async def read_capped_body(request: Request, limit: int) -> bytes:
    """Read the request body, aborting as soon as it exceeds ``limit`` bytes."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise HTTPException(status_code=413, detail="Request too large")
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise HTTPException(status_code=413, detail="Request too large")
    return bytes(body)


def _parse_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc


def create_ingress_app(
    tracker: ActivityTracker,
    *,
    token: Optional[str] = None,
    dev_mode: bool = False,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Build the ingress application around a running tracker."""
    session_token = token or new_session_token()

    app = FastAPI(title="LightTrack ingress", version=__version__, docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(IngressGuardMiddleware, rate_limiter=rate_limiter or RateLimiter())
    app.state.tracker = tracker
    app.state.token = session_token

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled ingress error on %s", request.url.path)
        return JSONResponse({"error": "Internal error"}, status_code=500)

    def require_token(request: Request) -> None:
        header = request.headers.get("authorization") or ""
        parts = header.split(" ")
        if len(parts) != 2 or parts[0] != "Bearer" or not hmac.compare_digest(
            parts[1].encode("utf-8"), session_token.encode("utf-8")
        ):
            raise HTTPException(status_code=401, detail="Unauthorized: Invalid or missing token")

    def may_receive_token(origin: Optional[str]) -> bool:
        if is_extension_origin(origin):
            return True
        return not origin and not dev_mode

    @app.get("/status")
    def status(request: Request) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": "ok",
            "version": __version__,
            "tracking": request.app.state.tracker.is_tracking,
        }
        if may_receive_token(request.headers.get("origin")):
            payload["token"] = session_token
        return payload

    @app.post("/browser-activity")
    async def browser_activity(request: Request) -> dict[str, Any]:
        require_token(request)
        raw = _parse_json(await read_capped_body(request, BROWSER_ACTIVITY_MAX_BYTES))
        try:
            payload = BrowserActivityPayload.model_validate(raw)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail="Missing required fields: url, title") from exc
        await run_in_threadpool(
            request.app.state.tracker.process_browser_activity, payload.url, payload.title, payload.browser
        )
        return {"success": True}

    @app.post("/page-context")
    async def page_context(request: Request) -> dict[str, Any]:
        require_token(request)
        raw = _parse_json(await read_capped_body(request, PAGE_CONTEXT_MAX_BYTES))
        try:
            payload = PageContextPayload.model_validate(raw)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail="Invalid page context") from exc
        if payload.type in ("jira", "github"):
            await run_in_threadpool(request.app.state.tracker.process_page_context, payload.type, payload.data)
        return {"success": True}

    return app
