import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from chatdash.core.logging import request_id_ctx_var, latency_bucket_ms

logger = logging.getLogger("chatdash.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Bind a request_id for the life of the request and log one
    `request.complete` line per request.

    The line carries the authenticated user (set on request.state by
    get_current_user) and the remaining-message count the chat endpoint
    reports, so quota questions can be answered from logs alone.
    5xx responses are logged at WARNING.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid

            status = getattr(response, "status_code", None)
            logger.log(
                logging.WARNING if status and status >= 500 else logging.INFO,
                "request.complete",
                extra={
                    "request_id": rid,
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "user_id": getattr(request.state, "user_id", None),
                    "messages_remaining": response.headers.get("x-messages-remaining"),
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
