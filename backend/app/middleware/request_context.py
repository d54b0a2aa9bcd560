from __future__ import annotations

import uuid

import sentry_sdk
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..logging_context import pop_request_context, push_request_context


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id for logs, Sentry and the response headers."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = push_request_context(
            request_id, method=request.method, path=request.url.path
        )
        request.state.request_id = request_id
        sentry_sdk.set_tag("request_id", request_id)
        try:
            response: Response = await call_next(request)
        finally:
            pop_request_context(token)
        response.headers.setdefault("X-Request-ID", request_id)
        return response
