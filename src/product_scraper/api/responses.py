"""Standard response envelope.

Every JSON response, errors included, has the shape::

    {"success": bool, "data": ..., "error": str, "message": str,
     "timestamp": ISO-8601, "requestId": str}

``data``, ``error`` and ``message`` are omitted when unset.  Route handlers
return :func:`ok`; the exception handlers in ``main.py`` return
:func:`error_response`.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from product_scraper.core.logging_config import request_id_var

#: Exception class name -> ``error`` label and HTTP status.
ERROR_STATUS: dict[str, int] = {
    "ValidationError": 400,
    "RecipeError": 400,
    "NotFoundError": 404,
    "InvalidStateError": 409,
    "RateLimitExceeded": 429,
    "StorageError": 500,
    "InternalError": 500,
}


def _request_id(request: Request | None) -> str:
    if request is not None:
        value = getattr(request.state, "request_id", None)
        if value:
            return value
    return request_id_var.get() or str(uuid.uuid4())


def envelope(
    request: Request | None,
    *,
    success: bool,
    data: Any = None,
    error: str | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"success": success}
    if data is not None:
        body["data"] = jsonable_encoder(data)
    if error is not None:
        body["error"] = error
    if message is not None:
        body["message"] = message
    body["timestamp"] = datetime.now(timezone.utc).isoformat()
    body["requestId"] = _request_id(request)
    return body


def ok(
    request: Request,
    data: Any = None,
    *,
    message: str | None = None,
    status_code: int = 200,
) -> JSONResponse:
    """Successful envelope."""
    return JSONResponse(
        envelope(request, success=True, data=data, message=message),
        status_code=status_code,
    )


def error_response(
    request: Request,
    error: str,
    message: str,
    *,
    status_code: int | None = None,
    data: Any = None,
) -> JSONResponse:
    """Failed envelope.  The status defaults from :data:`ERROR_STATUS`."""
    return JSONResponse(
        envelope(request, success=False, data=data, error=error, message=message),
        status_code=status_code or ERROR_STATUS.get(error, 500),
    )
