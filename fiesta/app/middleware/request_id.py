"""Request ID middleware.

Every inbound call gets an ``X-Request-ID`` (echoed from the client when it
sends one) that is exposed on ``request.state`` and threaded through the log
context of the chat pipeline.
"""

import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from fiesta.app.core.logging import get_log_context, get_logger
from fiesta.app.middleware.rate_limit import get_client_key

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    def resolve(self, request: Request) -> str:
        incoming = (request.headers.get(self.header_name) or "").strip()
        if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
            return incoming
        return str(uuid.uuid4())

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = self.resolve(request)
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)
        response.headers[self.header_name] = request_id

        logger.debug(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra=get_log_context(
                request_id=request_id,
                client_key=get_client_key(request.headers),
                duration_ms=(time.perf_counter() - started) * 1000,
            ),
        )
        return response


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")
