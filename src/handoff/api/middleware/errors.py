"""Turns workflow and HTTP-layer errors into JSON error bodies.

Every error leaves the API as:
- error: machine code (``invalid_transition``, ``otp_mismatch``, ...)
- message: human-readable reason
- detail: context (current status, allowed next statuses, attempts remaining)
- request_id: correlation id

Workflow errors from ``handoff.services.errors`` map to fixed HTTP statuses
through ``STATUS_BY_CODE``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from handoff.api.middleware.request_id import get_request_id
from handoff.services.errors import HandoffError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from fastapi import Request
    from starlette.responses import Response

logger = logging.getLogger(__name__)

STATUS_BY_CODE: dict[str, int] = {
    "invalid_transition": 409,
    "precondition_failed": 422,
    "otp_mismatch": 400,
    "otp_expired": 410,
    "concurrent_modification": 409,
    "already_finalized": 409,
    "external_dependency_failure": 502,
    "not_found": 404,
    "permission_denied": 403,
}


class APIError(Exception):
    """Error raised by the HTTP layer itself (authentication, signatures)."""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int = 400,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self.error = error
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class AuthenticationError(APIError):
    """Missing or malformed principal (401)."""

    def __init__(
        self, message: str = "Authentication required", detail: dict[str, Any] | None = None
    ) -> None:
        super().__init__(error="unauthorized", message=message, status_code=401, detail=detail)


class AuthorizationError(APIError):
    """Principal present but not allowed on this namespace (403)."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(error="forbidden", message=message, status_code=403, detail=detail)


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    body: dict[str, Any] = {"error": error, "message": message, "detail": detail or {}}
    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id
    return JSONResponse(status_code=status_code, content=body)


def status_for(error: HandoffError) -> int:
    """HTTP status for a workflow error."""
    return STATUS_BY_CODE.get(error.code, 400)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turns exceptions into the JSON error body.

    Handles:
    - HandoffError subclasses: workflow errors, status from STATUS_BY_CODE
    - APIError: HTTP-layer errors
    - HTTPException and pydantic ValidationError
    - Anything else: logged, generic 500
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        try:
            return await call_next(request)
        except HandoffError as exc:
            status_code = status_for(exc)
            if status_code >= 500:
                logger.error(
                    "Dependency failure on %s %s: %s",
                    request.method,
                    request.url.path,
                    exc.reason,
                )
            return build_error_response(
                error=exc.code,
                message=exc.reason,
                status_code=status_code,
                detail=exc.context,
            )
        except APIError as exc:
            return build_error_response(
                error=exc.error,
                message=exc.message,
                status_code=exc.status_code,
                detail=exc.detail,
            )
        except HTTPException as exc:
            return build_error_response(
                error="http_error",
                message=str(exc.detail),
                status_code=exc.status_code,
            )
        except ValidationError as exc:
            return build_error_response(
                error="validation_error",
                message="Request validation failed",
                status_code=422,
                detail={"errors": exc.errors()},
            )
        except Exception:
            logger.exception(
                "Unexpected error processing request: %s %s",
                request.method,
                request.url.path,
            )
            return build_error_response(
                error="internal_error",
                message="An internal error occurred",
                status_code=500,
            )
