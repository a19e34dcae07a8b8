import logging

from fastapi import HTTPException

from kpi_compliance.core.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def http_error(exc: Exception, action: str) -> HTTPException:
    """Map a domain exception to the HTTP error returned by the routes."""
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    logger.exception("%s failed", action)
    return HTTPException(status_code=500, detail=f"{action} failed")
