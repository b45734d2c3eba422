"""Data models for jobs, tasks and credit profiles."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID


class JobType(str, Enum):
    """Kinds of generation work."""

    ANALYSIS = "ANALYSIS"
    IMAGE_GEN = "IMAGE_GEN"
    STYLE_REPLICATE = "STYLE_REPLICATE"


class JobStatus(str, Enum):
    """Job status values."""

    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PROCESSING


class TaskStatus(str, Enum):
    """Task status values."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class CreditBucket(str, Enum):
    SUBSCRIPTION = "subscription"
    PURCHASED = "purchased"


class ProcessOutcome(str, Enum):
    """Result of one pass of the claim protocol over a job."""

    PROCESSED = "processed"
    REQUEUED = "requeued"
    FAILED = "failed"
    SUPERSEDED = "superseded"
    ALREADY_TERMINAL = "already_terminal"
    NO_AVAILABLE_TASK = "no_available_task"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Job:
    """Represents a generation job record."""

    def __init__(
        self,
        id: UUID,
        user_id: str,
        type: JobType,
        status: JobStatus,
        payload: Dict[str, Any],
        cost_amount: int = 0,
        subscription_deducted: int = 0,
        purchased_deducted: int = 0,
        is_refunded: bool = False,
        result_data: Optional[Dict[str, Any]] = None,
        result_url: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        trace_id: Optional[str] = None,
        client_job_id: Optional[str] = None,
        fe_attempt: int = 1,
        be_retry: int = 0,
        duration_ms: Optional[int] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.user_id = user_id
        self.type = JobType(type) if isinstance(type, str) else type
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.payload = payload
        self.cost_amount = cost_amount
        self.subscription_deducted = subscription_deducted
        self.purchased_deducted = purchased_deducted
        self.is_refunded = is_refunded
        self.result_data = result_data
        self.result_url = result_url
        self.error_code = error_code
        self.error_message = error_message
        self.trace_id = trace_id
        self.client_job_id = client_job_id
        self.fe_attempt = fe_attempt
        self.be_retry = be_retry
        self.duration_ms = duration_ms
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "type": self.type.value,
            "status": self.status.value,
            "payload": self.payload,
            "cost_amount": self.cost_amount,
            "subscription_deducted": self.subscription_deducted,
            "purchased_deducted": self.purchased_deducted,
            "is_refunded": self.is_refunded,
            "result_data": self.result_data,
            "result_url": self.result_url,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "trace_id": self.trace_id,
            "client_job_id": self.client_job_id,
            "fe_attempt": self.fe_attempt,
            "be_retry": self.be_retry,
            "duration_ms": self.duration_ms,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Build a job from its `to_dict` form, e.g. an HTTP response body."""
        return cls(
            id=UUID(str(data["id"])),
            user_id=data["user_id"],
            type=data["type"],
            status=data["status"],
            payload=data.get("payload") or {},
            cost_amount=data.get("cost_amount", 0),
            subscription_deducted=data.get("subscription_deducted", 0),
            purchased_deducted=data.get("purchased_deducted", 0),
            is_refunded=data.get("is_refunded", False),
            result_data=data.get("result_data"),
            result_url=data.get("result_url"),
            error_code=data.get("error_code"),
            error_message=data.get("error_message"),
            trace_id=data.get("trace_id"),
            client_job_id=data.get("client_job_id"),
            fe_attempt=data.get("fe_attempt", 1),
            be_retry=data.get("be_retry", 0),
            duration_ms=data.get("duration_ms"),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


class Task:
    """The executable unit behind a job. Exactly one per job."""

    def __init__(
        self,
        id: UUID,
        job_id: UUID,
        task_type: JobType,
        status: TaskStatus,
        payload: Dict[str, Any],
        attempts: int = 0,
        locked_at: Optional[datetime] = None,
        run_after: Optional[datetime] = None,
        last_error: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.job_id = job_id
        self.task_type = JobType(task_type) if isinstance(task_type, str) else task_type
        self.status = TaskStatus(status) if isinstance(status, str) else status
        self.payload = payload
        self.attempts = attempts
        self.locked_at = locked_at
        self.run_after = run_after
        self.last_error = last_error
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "job_id": str(self.job_id),
            "task_type": self.task_type.value,
            "status": self.status.value,
            "payload": self.payload,
            "attempts": self.attempts,
            "locked_at": _iso(self.locked_at),
            "run_after": _iso(self.run_after),
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Profile:
    """A user's two-bucket credit balance."""

    def __init__(
        self,
        id: str,
        email: Optional[str] = None,
        subscription_credits: int = 0,
        purchased_credits: int = 0,
        has_first_subscription: bool = False,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.email = email
        self.subscription_credits = subscription_credits
        self.purchased_credits = purchased_credits
        self.has_first_subscription = has_first_subscription
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def available_credits(self) -> int:
        return self.subscription_credits + self.purchased_credits

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "subscription_credits": self.subscription_credits,
            "purchased_credits": self.purchased_credits,
            "available_credits": self.available_credits,
            "has_first_subscription": self.has_first_subscription,
        }


class CreditSplit:
    """Amounts taken from (or returned to) each bucket for one job."""

    def __init__(self, subscription: int = 0, purchased: int = 0):
        self.subscription = subscription
        self.purchased = purchased

    @property
    def total(self) -> int:
        return self.subscription + self.purchased

    def __eq__(self, other) -> bool:
        if not isinstance(other, CreditSplit):
            return NotImplemented
        return (self.subscription, self.purchased) == (other.subscription, other.purchased)

    def __repr__(self) -> str:
        return f"CreditSplit(subscription={self.subscription}, purchased={self.purchased})"


class TaskResult:
    """What a task handler hands back on success."""

    def __init__(
        self,
        result_data: Optional[Dict[str, Any]] = None,
        result_url: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ):
        self.result_data = result_data or {}
        self.result_url = result_url
        # Set on partial success so the job still records what went wrong.
        self.error_code = error_code
        self.error_message = error_message


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
