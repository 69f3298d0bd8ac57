"""
Error taxonomy for queue operations

Business-rule failures are raised as typed exceptions and surface to the
caller. Estimation and counter assignment never raise; they degrade instead
(see queueModel.Ok / queueModel.Degraded).
"""


class QueueServiceError(Exception):
    """Base class for errors that reach the API caller"""

    status_code = 500
    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(QueueServiceError):
    """Service, entry or counter does not exist"""
    status_code = 404
    code = "not_found"


class Conflict(QueueServiceError):
    """Duplicate active membership or uniqueness violation"""
    status_code = 409
    code = "conflict"


class CapacityExceeded(QueueServiceError):
    """Queue is at its capacity ceiling"""
    status_code = 409
    code = "capacity_exceeded"


class InvalidTransition(QueueServiceError):
    """Illegal queue entry status change"""
    status_code = 409
    code = "invalid_transition"


class Unavailable(QueueServiceError):
    """Underlying store or collaborator is unreachable"""
    status_code = 503
    code = "unavailable"


class QueueClosed(QueueServiceError):
    """Queue is paused or closed to new entries"""
    status_code = 409
    code = "queue_not_active"
