import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from membership.core.logging import request_id_ctx_var, user_id_ctx_var

logger = logging.getLogger("membership.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Bind x-request-id (and the X-User-Id caller, when present) to the
    request context and log one line per completed request.
    """

    def __init__(self, app, header_name: str = "x-request-id", user_header: str = "x-user-id"):
        super().__init__(app)
        self.header_name = header_name
        self.user_header = user_header

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        rid_token = request_id_ctx_var.set(rid)
        user_token = user_id_ctx_var.set(request.headers.get(self.user_header))

        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(rid_token)
            user_id_ctx_var.reset(user_token)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 1)

        response.headers[self.header_name] = rid
        logger.info(
            "[http] request complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "elapsed_ms": elapsed_ms,
            },
        )
        return response
