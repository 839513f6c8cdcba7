"""Exception classes shared by the job store, artifact manager, engine and API."""


class JobError(RuntimeError):
    """Base class for job lifecycle errors.

    ``kind`` is the machine-readable error name; ``str(exc)`` renders
    ``"<kind>: <message>"`` and is what gets stored on a failed job.
    """

    kind = "JobError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        if self.message:
            return f"{self.kind}: {self.message}"
        return self.kind


class ValidationError(JobError):
    """Raised when a submission is rejected before a job is created."""

    kind = "ValidationError"


class IOFailure(JobError):
    """Raised when writing an upload, workspace or log file fails."""

    kind = "IOFailure"


class MissingCredentials(JobError):
    """Raised when no engine API key is available for a job."""

    kind = "MissingCredentials"


class ExecutionFailure(JobError):
    """Raised when the engine cannot be spawned or exits non-zero."""

    kind = "ExecutionFailure"


class NoOutputProduced(JobError):
    """Raised when the engine leaves no matching output files."""

    kind = "NoOutputProduced"


class NotFound(JobError):
    kind = "NotFound"


class DuplicateID(JobError):
    kind = "DuplicateID"


class InvalidTransition(JobError):
    """Raised for a status change the job state machine does not allow."""

    kind = "InvalidTransition"


class QueueFull(JobError):
    """Raised when the bounded job queue cannot accept another job."""

    kind = "QueueFull"

    def __init__(self, message: str = "", retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after
