"""Error taxonomy shared by the gateways, the coordinator and the HTTP layer.

Every error carries the HTTP status it maps to and whether a caller may retry.
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fundiconnect.common.logging import logger


class PipelineError(Exception):
    """Base class for errors surfaced to callers."""

    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        body = {"status": "error", "code": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ValidationFailed(PipelineError):
    status_code = 400
    code = "validation_failed"


class NotAuthorized(PipelineError):
    status_code = 403
    code = "not_authorized"


class NotFound(PipelineError):
    status_code = 404
    code = "not_found"


class Conflict(PipelineError):
    status_code = 409
    code = "conflict"


class InvalidTransition(Conflict, ValueError):
    """Raised when a status change is not an edge of the legal graph."""

    code = "invalid_transition"


class RetryCeilingExceeded(PipelineError):
    status_code = 429
    code = "retry_ceiling_exceeded"


class InternalError(PipelineError):
    pass


class ProviderTransientError(PipelineError):
    """Timeouts and 5xx responses from a messaging or payment provider."""

    code = "provider_transient"
    retryable = True


class ProviderFatalError(PipelineError):
    """Provider failures that will not succeed on retry."""

    code = "provider_fatal"


class ProviderUnavailable(ProviderTransientError):
    code = "provider_unavailable"


class ProviderError(ProviderTransientError):
    """Non-2xx messaging provider response; the message may be resent as-is."""

    code = "provider_error"


class RecipientUnreachable(ProviderFatalError):
    code = "recipient_unreachable"


class ConfigurationMissing(ProviderFatalError):
    code = "configuration_missing"


class ProviderRejected(ProviderFatalError):
    status_code = 400
    code = "provider_rejected"


def register_error_handlers(app: FastAPI) -> None:
    """Render pipeline errors as JSON bodies with their mapped status codes."""

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request failed path=%s code=%s error=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unexpected failure path=%s error=%s", request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "code": InternalError.code,
                "message": "Internal server error",
                "next_steps": "Please try again later or contact support",
            },
        )
