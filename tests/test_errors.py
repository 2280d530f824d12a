from __future__ import annotations

import json

import pytest

from zai_gateway.errors import (
    AnonymousMediaRejectedError,
    GatewayError,
    MediaUploadError,
    SigningInputMissingError,
    TokenExhaustedError,
    UpstreamUnreachableError,
    error_response,
)


@pytest.mark.parametrize(
    ("error", "status_code", "error_type", "code"),
    [
        (TokenExhaustedError("none left"), 500, "server_error", "token_exhausted"),
        (
            SigningInputMissingError("nothing to sign"),
            400,
            "invalid_request_error",
            "signing_input_missing",
        ),
        (
            UpstreamUnreachableError("down", upstream_status=503, attempts=2),
            502,
            "upstream_error",
            "upstream_unreachable",
        ),
        (MediaUploadError("upload failed"), 502, "upstream_error", "media_upload_failed"),
        (
            AnonymousMediaRejectedError("no images"),
            400,
            "invalid_request_error",
            "anonymous_media_unsupported",
        ),
    ],
)
def test_error_response_uses_openai_error_shape(
    error: GatewayError, status_code: int, error_type: str, code: str
) -> None:
    response = error_response(error)

    assert response.status_code == status_code
    assert json.loads(response.body) == {
        "error": {
            "message": error.message,
            "type": error_type,
            "param": None,
            "code": code,
        }
    }


def test_gateway_error_keeps_details() -> None:
    error = TokenExhaustedError("no credential", upstream_status=429)

    assert str(error) == "no credential"
    assert error.details == {"upstream_status": 429}
    assert isinstance(error, GatewayError)


def test_upstream_unreachable_exposes_attempts() -> None:
    error = UpstreamUnreachableError("down", upstream_status=None, attempts=3)

    assert error.attempts == 3
    assert error.upstream_status is None
