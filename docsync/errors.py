"""Error taxonomy for the HTTP surface."""

from typing import Any


class ApiError(Exception):
    """Base class for errors rendered as a JSON error envelope."""

    status: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.suggestion = suggestion
        self.context = context
        super().__init__(message)

    def to_payload(self, request_id: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "requestId": request_id,
            "status": self.status,
            "code": self.code,
            "error": self.message,
        }
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        payload.update(self.context)
        return payload


class ValidationFailed(ApiError):
    status = 400
    code = "INPUT_VALIDATION"


class AccessDenied(ApiError):
    status = 403
    code = "ACCESS_DENIED"


class FileNotFound(ApiError):
    status = 404
    code = "FILE_NOT_FOUND"


class PayloadTooLarge(ApiError):
    status = 413
    code = "PAYLOAD_TOO_LARGE"


class RateLimited(ApiError):
    status = 429
    code = "RATE_LIMIT"


class ConversionFailed(ApiError):
    status = 500
    code = "CONVERSION_FAILED"


class ServerBusy(ApiError):
    status = 503
    code = "SERVER_BUSY"
