"""
Engine error taxonomy.

Services raise these; they never raise `HTTPException` themselves.
The application factory installs one exception handler that maps
`status_code` / `detail` onto the JSON response, so the request layer
stays thin.
"""

from fastapi import status


class AccessError(Exception):
    """Base class for every error the engine surfaces to callers."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Request could not be processed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(AccessError):
    """Required input missing or blank.  Fix the input and resubmit."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"


class NotFoundError(AccessError):
    """Unknown user, role, permission or session."""

    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class ConflictError(AccessError):
    """Duplicate name or a lost race on a uniqueness invariant.  Retryable."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict"


class PrivilegeError(AccessError):
    """The actor is not allowed to do this.  Never downgraded to success."""

    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Insufficient permissions"


class SelfImpersonationError(PrivilegeError):
    default_detail = "Cannot impersonate yourself"


class StoreUnavailableError(AccessError):
    """Persistence failure.  Detail is logged, never returned."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Service temporarily unavailable"


class MalformedConditionError(ValueError):
    """Stored role-permission conditions are not a flat scalar mapping."""
