from fastapi import HTTPException

from app.core.errors import AuthError, NotFoundError, PayrollSyncError, ValidationError


def http_error(exc: PayrollSyncError) -> HTTPException:
    """Map a domain error to the HTTP status the UI expects."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AuthError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=422, detail=str(exc))
