"""Tests for the error taxonomy and the JSON error envelope."""

import json

import pytest

from chatgate.errors import (
    INTERNAL_ERROR_MESSAGE,
    STATUS_BY_TYPE,
    CapabilityUnavailable,
    ErrorType,
    GenerationFailed,
    RequestValidationFailed,
    error_response,
)


def test_status_table_is_closed():
    assert STATUS_BY_TYPE == {
        ErrorType.VALIDATION_ERROR: 400,
        ErrorType.SERVICE_UNAVAILABLE: 503,
        ErrorType.INTERNAL_ERROR: 500,
    }


@pytest.mark.parametrize(
    "error, status, error_type",
    [
        (RequestValidationFailed("bad body"), 400, "validation_error"),
        (CapabilityUnavailable("no backend"), 503, "service_unavailable"),
        (GenerationFailed(), 500, "internal_error"),
    ],
)
def test_error_response(error, status, error_type):
    response = error_response(error)

    assert response.status_code == status
    assert response.media_type == "application/json"
    body = json.loads(response.body)
    assert body == {"error": {"message": error.message, "type": error_type}}


def test_internal_error_message_is_generic():
    assert GenerationFailed().message == INTERNAL_ERROR_MESSAGE
