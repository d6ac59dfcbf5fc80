import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from captionai.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var

# Accept caller-supplied ids only if they are short and log-safe
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

logger = logging.getLogger(LOGGER_NAME)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Correlate one request across logs, error bodies and the response.

    Reuses a well-formed incoming x-request-id, otherwise mints one. The id is
    exposed as request.state.request_id and through request_id_ctx_var for the
    duration of the request.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    def _request_id(self, request) -> str:
        incoming = request.headers.get(self.header_name, "")
        return incoming if _VALID_REQUEST_ID.match(incoming) else uuid4().hex

    async def dispatch(self, request, call_next):
        rid = self._request_id(request)
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers[self.header_name] = rid
        logger.info(
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed_ms, 1),
                "latency_bucket": latency_bucket_ms(elapsed_ms),
            },
        )
        return response
