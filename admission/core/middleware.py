"""Request correlation middleware.

Every response carries the request id (taken from the incoming header or
generated) and the handling time, and log records emitted while the request
is handled pick the id up from contextvars.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from admission.core.config import settings
from admission.core.logging import clear_request_id, set_request_id


async def request_id_middleware(request: Request, call_next) -> Response:
    """Propagate ``X-Request-ID`` and add ``X-Request-Duration-ms``."""

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    started = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault(
        "X-Request-Duration-ms", f"{(time.perf_counter() - started) * 1000:.2f}"
    )
    return response
