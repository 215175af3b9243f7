"""
Domain exception taxonomy.

Every error raised by the core carries:
  - error_code     : stable machine-readable code (returned to clients)
  - status_code    : HTTP status used by the API exception handler
  - public_message : text that is safe to show to the caller

  ConfigurationError   missing credentials: fatal at startup
  ValidationError      bad file count / size / mime: before any side effect
  ExternalServiceError OCR, model or file-store call failed
  ParseError           model output could not be decoded into its schema
  ConflictError        owner-scoped name collision: recoverable
  NotFoundError        record does not exist for this owner

ExternalServiceError and ParseError never expose their detail to the caller;
the detail is only written to the logs by the exception handler.
"""

from __future__ import annotations

from typing import Any


class IntakeError(Exception):
    """Base class for all domain errors."""

    error_code:  str = "INTERNAL_ERROR"
    status_code: int = 500
    public_message: str = "An unexpected error occurred."
    expose_detail: bool = False

    def __init__(self, message: str | None = None, *, field: str | None = None) -> None:
        self.detail = message or self.public_message
        self.field  = field
        super().__init__(self.detail)

    @property
    def user_message(self) -> str:
        return self.detail if self.expose_detail else self.public_message


class ConfigurationError(IntakeError):
    error_code = "CONFIGURATION_ERROR"
    status_code = 500
    public_message = "The service is not configured correctly."


class ValidationError(IntakeError):
    error_code = "VALIDATION_ERROR"
    status_code = 400
    public_message = "The request is invalid."
    expose_detail = True

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        error_code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, field=field)
        if error_code:
            self.error_code = error_code
        if status_code:
            self.status_code = status_code


class ExternalServiceError(IntakeError):
    error_code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502
    public_message = "A downstream service failed while processing the document. Please retry."

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        super().__init__(f"{service}: {message}")


class ParseError(IntakeError):
    error_code = "PARSE_ERROR"
    status_code = 502
    public_message = "The analysis service returned an unreadable response. Please retry."

    def __init__(self, message: str, raw: Any = None) -> None:
        self.raw = raw
        super().__init__(message)


class ConflictError(IntakeError):
    error_code = "CONFLICT"
    status_code = 409
    public_message = "The resource already exists."
    expose_detail = True

    def __init__(self, message: str, *, existing: Any = None) -> None:
        self.existing = existing
        super().__init__(message)


class NotFoundError(IntakeError):
    error_code = "NOT_FOUND"
    status_code = 404
    public_message = "The requested resource was not found."
    expose_detail = True
