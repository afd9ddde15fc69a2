"""Domain error taxonomy.

Every workflow raises one of these when a request cannot be honoured. The
API layer maps ``status_code`` straight onto the HTTP response, so the kind of
failure survives unchanged from the service that detected it to the client.
"""

from __future__ import annotations


class LibraryError(Exception):
    """Base class for errors a caller is expected to handle."""

    status_code = 500
    kind = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def __str__(self) -> str:
        return self.message


class NotFound(LibraryError):
    status_code = 404
    kind = "not_found"


class Conflict(LibraryError):
    status_code = 409
    kind = "conflict"


class InvalidState(LibraryError):
    status_code = 400
    kind = "invalid_state"


class Forbidden(LibraryError):
    status_code = 403
    kind = "forbidden"


class Unauthorized(LibraryError):
    status_code = 401
    kind = "unauthorized"


class ResourceExhausted(LibraryError):
    status_code = 503
    kind = "resource_exhausted"


class ServiceUnavailable(LibraryError):
    """A downstream collaborator (catalog API, job worker) failed."""

    status_code = 503
    kind = "unavailable"


class ServiceError(LibraryError):
    """Unexpected failure, wrapped with the operation that hit it."""

    status_code = 500
    kind = "internal"
