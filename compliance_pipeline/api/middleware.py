"""Request middleware"""

import time
from typing import Callable

from fastapi import HTTPException, status
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send
import structlog

logger = structlog.get_logger()


class RequestSizeLimitMiddleware:
    """
    Reject request bodies larger than ``max_size`` bytes with 413

    A declared ``Content-Length`` is checked up front. Bodies without one
    (chunked uploads) are counted as they are received, and the first chunk
    past the limit aborts the request.
    """

    def __init__(self, app: ASGIApp, max_size: int):
        self.app = app
        self.max_size = max_size

    def _too_large(self, path: str, size: int) -> str:
        logger.warning(
            "request_too_large",
            path=path,
            size=size,
            max_size=self.max_size
        )
        return f"Request body exceeds {self.max_size} bytes"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        content_length = Headers(scope=scope).get("content-length")
        if content_length is not None:
            try:
                size = int(content_length)
            except ValueError:
                response = JSONResponse(status_code=400, content={"detail": "Invalid Content-Length"})
                await response(scope, receive, send)
                return
            if size > self.max_size:
                response = JSONResponse(
                    status_code=413,
                    content={"detail": self._too_large(path, size)}
                )
                await response(scope, receive, send)
                return

        received = 0

        async def receive_with_size_check() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_size:
                    # Raised while the route reads its body; rendered as 413
                    raise HTTPException(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        detail=self._too_large(path, received)
                    )
            return message

        await self.app(scope, receive_with_size_check, send)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log request completion with status and latency; bodies are never logged"""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        start_time = time.time()
        response = await call_next(request)
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=int((time.time() - start_time) * 1000)
        )
        return response
