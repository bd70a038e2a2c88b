"""ASGI middleware installed by :func:`certsign.main.create_app`."""

from __future__ import annotations

import re
import time
import uuid

from loguru import logger
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send

from certsign.core.errors import error_body
from certsign.core.logging import request_id_ctx_var, resource_id_ctx_var

REQUEST_ID_HEADER = "X-Request-ID"
# Client supplied ids end up in every log line; anything else is replaced.
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _request_id(request: Request) -> str:
    supplied = request.headers.get(REQUEST_ID_HEADER, "")
    if _REQUEST_ID_RE.match(supplied):
        return supplied
    return uuid.uuid4().hex


class RequestContextLogMiddleware(BaseHTTPMiddleware):
    """Tag the request with an id and write one access log line for it."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = _request_id(request)
        request.state.request_id = request_id
        tokens = (request_id_ctx_var.set(request_id), resource_id_ctx_var.set("-"))
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            log = logger.bind(
                method=request.method,
                path=request.url.path,
                status=status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            if status_code >= 500:
                log.warning("request_completed")
            else:
                log.info("request_completed")
            request_id_ctx_var.reset(tokens[0])
            resource_id_ctx_var.reset(tokens[1])


class BodySizeLimitMiddleware:
    """Answer 413 before routing when the declared body exceeds ``max_bytes``."""

    def __init__(self, app: ASGIApp, *, max_bytes: int):
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            declared = Headers(scope=scope).get("content-length", "")
            if declared.isdigit() and int(declared) > self.max_bytes:
                response = JSONResponse(
                    status_code=413,
                    content=error_body(413, "Request entity too large"),
                )
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)
