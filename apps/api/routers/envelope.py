"""Uniform JSON response envelope: ``{success, data?, error?, message?, timestamp}``."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from services.errors import OAuthError


def envelope(
    success: bool,
    *,
    data: Any = None,
    error: Optional[str] = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": success}
    if data is not None:
        body["data"] = data
    if error is not None:
        body["error"] = error
    if message is not None:
        body["message"] = message
    body["timestamp"] = datetime.now(timezone.utc).isoformat()
    return body


def success_response(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(True, data=data, message=message))


def error_response(exc: OAuthError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=envelope(False, error=exc.message))
