"""
Typed failures surfaced by the copilot rating service.

Callers only ever see these; store- and cache-specific exceptions are
translated at the service boundary.
"""


class CopilotServiceError(Exception):
    """Base class for every failure the service reports to callers."""
    status_code: int = 500


class ValidationError(CopilotServiceError):
    """Malformed input (e.g. an unparseable rating). Raised before any mutation."""
    status_code = 400


class NotFoundError(CopilotServiceError):
    """The requested item or subject does not exist."""
    status_code = 404


class PermissionDeniedError(CopilotServiceError):
    """The actor does not own the item it tried to mutate."""
    status_code = 403


class StoreUnavailableError(CopilotServiceError):
    """The backing store could not be reached or refused the operation."""
    status_code = 503


class ConflictError(CopilotServiceError):
    """The operation is already running and a second run was refused."""
    status_code = 409
