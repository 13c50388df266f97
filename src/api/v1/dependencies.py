from __future__ import annotations

from fastapi import HTTPException, status

from services.errors import ConfigError, HubError


def http_error(exc: HubError) -> HTTPException:
    """Map a service failure onto the status code clients should see."""
    if isinstance(exc, ConfigError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
