class JobEngineError(Exception):
    """Base class for every error the job engine raises."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidTransition(JobEngineError):
    """A status change that the job state machine does not allow."""
    status_code = 409


class NotFound(JobEngineError):
    status_code = 404


class InvalidState(JobEngineError):
    """An operation that is not valid for the job's current status."""
    status_code = 409


class LeaseExpired(JobEngineError):
    """The worker no longer owns the job it is reporting on."""
    status_code = 409


class HandlerError(JobEngineError):
    """Wraps whatever the job handler raised."""
    status_code = 500


class Timeout(JobEngineError):
    status_code = 504


class StoreUnavailable(JobEngineError):
    status_code = 503


class InvalidPayload(JobEngineError):
    status_code = 400


class DuplicateJob(JobEngineError):
    status_code = 409
