"""Per-request logging context.

Assigns a request id (reusing an inbound ``X-Request-ID`` when present),
exposes it on the response, and clears the logging context afterwards so
nothing leaks into the next request handled by the same task.
"""

import logging
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..observability.logging import clear_log_context, set_log_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id to the logging context for the request lifetime."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        set_log_context(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            clear_log_context()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
