"""Exception types for the studio jobs engine."""


class StudioJobsError(Exception):
    """Base exception for all studio jobs errors."""

    pass


class InsufficientCreditsError(StudioJobsError):
    """Raised when a user's balance cannot cover the cost of a job."""

    code = "INSUFFICIENT_CREDITS"

    def __init__(self, user_id: str, required: int, available: int, message: str = None):
        self.user_id = user_id
        self.required = required
        self.available = available
        if message is None:
            message = f"Insufficient credits for user {user_id}: required {required}, available {available}"
        super().__init__(message)


class JobNotFoundError(StudioJobsError):
    """Raised when a job is not found."""

    def __init__(self, job_id, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class JobAccessDeniedError(StudioJobsError):
    """Raised when a user asks for a job that belongs to someone else."""

    def __init__(self, job_id, user_id: str, message: str = None):
        self.job_id = job_id
        self.user_id = user_id
        if message is None:
            message = f"Job {job_id} belongs to another user"
        super().__init__(message)


class ProfileNotFoundError(StudioJobsError):
    """Raised when a user has no credit profile."""

    def __init__(self, user_id: str, message: str = None):
        self.user_id = user_id
        if message is None:
            message = f"Profile {user_id} not found"
        super().__init__(message)


class TaskExecutionError(StudioJobsError):
    """Raised by task handlers. Carries the error code stored on a failed job."""

    def __init__(self, code: str, message: str, retryable: bool = True):
        self.code = code
        self.message = message
        self.retryable = retryable
        super().__init__(f"{code}: {message}")


class UpstreamError(TaskExecutionError):
    """Raised when an upstream AI endpoint returns an error or cannot be reached."""

    def __init__(self, status_code: int, message: str, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        code = "UPSTREAM_TIMEOUT" if status_code == 504 else "UPSTREAM_ERROR"
        super().__init__(code, f"HTTP {status_code}: {message}", retryable=True)


class JobFailedError(StudioJobsError):
    """Raised by a waiter when the job it observes reaches the failed state."""

    def __init__(self, job, message: str = None):
        self.job = job
        self.error_code = getattr(job, "error_code", None)
        if message is None:
            message = getattr(job, "error_message", None) or f"Job {job.id} failed"
        super().__init__(message)


class WaitCancelledError(StudioJobsError):
    """Raised when a wait is cancelled or times out. The job itself keeps running."""

    def __init__(self, job_id, reason: str = "cancelled"):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Stopped waiting for job {job_id}: {reason}")


class AuthTokenError(StudioJobsError):
    """Raised when the auth token or the caller identity is missing or invalid."""

    pass


class RemoteHttpError(StudioJobsError):
    """Raised when an HTTP request to a remote studio jobs service fails."""

    def __init__(
        self, status_code: int, message: str, response_body: str = None, code: str = None
    ):
        self.status_code = status_code
        self.response_body = response_body
        self.code = code
        super().__init__(f"HTTP {status_code}: {message}")
