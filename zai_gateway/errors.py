from __future__ import annotations

from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse


class GatewayError(Exception):
    """Base class for failures the gateway core surfaces to its caller."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "server_error"
    code: str = "gateway_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class TokenExhaustedError(GatewayError):
    """Raised when no configured credential qualifies and the anonymous fetch fails."""

    code = "token_exhausted"


class SigningInputMissingError(GatewayError):
    """Raised when a request carries no user text to sign."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"
    code = "signing_input_missing"


class UpstreamUnreachableError(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upstream_error"
    code = "upstream_unreachable"

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        attempts: int = 0,
        **details: Any,
    ) -> None:
        super().__init__(message, **details)
        self.upstream_status = upstream_status
        self.attempts = attempts


class MediaUploadError(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upstream_error"
    code = "media_upload_failed"


class AnonymousMediaRejectedError(GatewayError):
    """Raised when media content would be uploaded with an anonymous credential."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"
    code = "anonymous_media_unsupported"


def error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "type": exc.error_type,
                "param": None,
                "code": exc.code,
            },
        },
    )
