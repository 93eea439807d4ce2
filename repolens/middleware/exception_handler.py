"""Exception handler turning RepoLensException into structured JSON responses."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from ..exceptions import RepoLensException

logger = logging.getLogger(__name__)


async def repolens_exception_handler(request: Request, exc: RepoLensException) -> JSONResponse:
    """
    Log a RepoLensException and return its ``to_dict()`` body.

    Client errors (4xx) log at WARNING, server errors at ERROR.
    """
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        level,
        "%s: %s",
        exc.error_code.value,
        exc.message,
        extra={
            "error_code": exc.error_code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
            "status_code": exc.status_code,
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
