"""Unit tests for errors module."""

from uuid import uuid4

from studio_jobs.errors import (
    InsufficientCreditsError,
    JobFailedError,
    JobNotFoundError,
    RemoteHttpError,
    StudioJobsError,
    TaskExecutionError,
    UpstreamError,
    WaitCancelledError,
)
from studio_jobs.models import JobStatus


def test_insufficient_credits_error():
    error = InsufficientCreditsError("user-1", required=12, available=10)

    assert isinstance(error, StudioJobsError)
    assert error.code == "INSUFFICIENT_CREDITS"
    assert error.required == 12
    assert error.available == 10
    assert "required 12" in str(error)


def test_job_not_found_error():
    """Test JobNotFoundError."""
    job_id = uuid4()
    error = JobNotFoundError(job_id)

    assert error.job_id == job_id
    assert str(job_id) in str(error)


def test_task_execution_error_defaults_to_retryable():
    error = TaskExecutionError("ANALYSIS_FAILED", "bad reply")

    assert error.retryable is True
    assert str(error) == "ANALYSIS_FAILED: bad reply"


def test_upstream_error_codes():
    assert UpstreamError(504, "timeout").code == "UPSTREAM_TIMEOUT"
    assert UpstreamError(500, "boom").code == "UPSTREAM_ERROR"
    assert UpstreamError(0, "network").retryable is True


def test_job_failed_error_carries_job(job_factory):
    job = job_factory(
        status=JobStatus.FAILED, error_code="UPSTREAM_ERROR", error_message="HTTP 500"
    )

    error = JobFailedError(job)

    assert error.job is job
    assert error.error_code == "UPSTREAM_ERROR"
    assert str(error) == "HTTP 500"


def test_wait_cancelled_error():
    job_id = uuid4()
    error = WaitCancelledError(job_id, "timeout")

    assert error.reason == "timeout"
    assert "timeout" in str(error)


def test_remote_http_error():
    """Test RemoteHttpError."""
    error = RemoteHttpError(
        status_code=402,
        message="Not enough credits",
        response_body='{"error": {}}',
        code="INSUFFICIENT_CREDITS",
    )

    assert error.status_code == 402
    assert error.code == "INSUFFICIENT_CREDITS"
    assert "HTTP 402" in str(error)
