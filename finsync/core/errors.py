"""Service-level exceptions translated to HTTP responses by the routers."""


class FinsyncError(Exception):
    """Base class for domain errors raised by the service layer."""
    status_code = 500


class NotFoundError(FinsyncError):
    """Requested resource does not exist or is not visible to the caller."""
    status_code = 404


class PermissionDeniedError(FinsyncError):
    """Caller is not allowed to perform the operation."""
    status_code = 403


class ConflictError(FinsyncError):
    """Operation conflicts with the current state of the resource."""
    status_code = 409


class InvalidInputError(FinsyncError, ValueError):
    """Input rejected before any persistence attempt."""
    status_code = 400


class GoneError(FinsyncError):
    """Resource existed but can no longer be used (expired or already consumed)."""
    status_code = 410
