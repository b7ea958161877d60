import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AgriSenseError(Exception):
    """Base error; rendered as ``{"error": message}`` with ``status_code``."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(AgriSenseError):
    status_code = status.HTTP_404_NOT_FOUND


class InputValidationError(AgriSenseError):
    status_code = status.HTTP_400_BAD_REQUEST


class UpstreamError(AgriSenseError):
    """An LLM, SMS, voice or weather provider failed or answered with a bad shape."""


class ParseError(UpstreamError):
    """The LLM answered, but not with the JSON object we asked for."""


class SweepAlreadyRunning(AgriSenseError):
    status_code = status.HTTP_409_CONFLICT


async def agrisense_error_handler(request: Request, exc: AgriSenseError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(AgriSenseError, agrisense_error_handler)
