import logging
import re
import time
from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from recipe_credits.core.logging import LOGGER_NAME, bind_request_id, latency_bucket_ms

# Incoming ids are echoed back and logged; anything else gets a fresh id
_ACCEPTED_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_request_id(incoming: Optional[str] = None) -> str:
    if incoming and _ACCEPTED_REQUEST_ID.match(incoming):
        return incoming
    return str(uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the request, echo it in the response and log completion."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = resolve_request_id(request.headers.get(self.header_name))
        request.state.request_id = rid

        start = time.perf_counter()
        with bind_request_id(rid):
            response = await call_next(request)
        response.headers[self.header_name] = rid

        logging.getLogger(LOGGER_NAME).info(
            "request.complete",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
            },
        )
        return response
