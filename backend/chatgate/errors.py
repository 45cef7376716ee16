from enum import Enum

from fastapi.responses import JSONResponse

from chatgate.schemas import ErrorEnvelope, ErrorPayload


class ErrorType(str, Enum):
    VALIDATION_ERROR = "validation_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    INTERNAL_ERROR = "internal_error"


# Closed table, no other status codes leave the completion handler
STATUS_BY_TYPE = {
    ErrorType.VALIDATION_ERROR: 400,
    ErrorType.SERVICE_UNAVAILABLE: 503,
    ErrorType.INTERNAL_ERROR: 500,
}

INTERNAL_ERROR_MESSAGE = "Internal server error occurred"


class GatewayError(Exception):
    """Base for errors that are reported to the caller as an ErrorPayload."""

    error_type = ErrorType.INTERNAL_ERROR

    def __init__(self, message: str = INTERNAL_ERROR_MESSAGE):
        super().__init__(message)
        self.message = message

    @property
    def status_code(self) -> int:
        return STATUS_BY_TYPE[self.error_type]

    def to_payload(self) -> ErrorPayload:
        return ErrorPayload(message=self.message, type=self.error_type.value)


class RequestValidationFailed(GatewayError):
    error_type = ErrorType.VALIDATION_ERROR


class CapabilityUnavailable(GatewayError):
    """The generation capability cannot be engaged (missing backend, open circuit)."""

    error_type = ErrorType.SERVICE_UNAVAILABLE


class GenerationFailed(GatewayError):
    error_type = ErrorType.INTERNAL_ERROR


def error_response(error: GatewayError) -> JSONResponse:
    envelope = ErrorEnvelope(error=error.to_payload())
    return JSONResponse(content=envelope.model_dump(), status_code=error.status_code)
