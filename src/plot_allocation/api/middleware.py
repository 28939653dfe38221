"""
Starlette middleware that gives every plot API request a correlation id.

The id is taken from the configured request header when the client sends
one, generated otherwise, stored on `request.state.correlation_id` for the
route handlers (which pass it to the ledger) and echoed on the response.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        *,
        header_name: str = "X-Correlation-ID",
        path_prefix: str = "/plots",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.header_name = header_name
        self.path_prefix = path_prefix.rstrip("/")
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        correlation_id = request.headers.get(self.header_name) or uuid4().hex
        request.state.correlation_id = correlation_id

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers[self.header_name] = correlation_id
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            extra={"correlation_id": correlation_id},
        )
        return response


def correlation_id_from(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)
