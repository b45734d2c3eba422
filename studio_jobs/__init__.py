"""Async job engine for AI product-photo generation."""

from studio_jobs.config import StudioJobsConfig
from studio_jobs.ddl import SCHEMA_DDL
from studio_jobs.errors import (
    AuthTokenError,
    InsufficientCreditsError,
    JobAccessDeniedError,
    JobFailedError,
    JobNotFoundError,
    ProfileNotFoundError,
    RemoteHttpError,
    StudioJobsError,
    TaskExecutionError,
    UpstreamError,
    WaitCancelledError,
)
from studio_jobs.events import BalanceChanged, CreditEventBus
from studio_jobs.fastapi_router import create_jobs_router
from studio_jobs.http_client import SseJobNotifier, StudioJobsHttpClient
from studio_jobs.ledger import CreditLedger, split_deduction
from studio_jobs.models import (
    CreditSplit,
    Job,
    JobStatus,
    JobType,
    ProcessOutcome,
    Profile,
    Task,
    TaskResult,
    TaskStatus,
)
from studio_jobs.notifier import PostgresJobNotifier
from studio_jobs.pricing import CreditCostTable
from studio_jobs.registry import JobRegistry, job_registry
from studio_jobs.service import JobService
from studio_jobs.store import JobStore
from studio_jobs.streaming import PromptStreamConsumer, PromptStreamResult, parse_prompts
from studio_jobs.waiter import wait_for_job
from studio_jobs.worker import process_job, run_worker_loop
from studio_jobs.worker_main import run_worker

__version__ = "0.1.0"

__all__ = [
    "StudioJobsConfig",
    "SCHEMA_DDL",
    "AuthTokenError",
    "InsufficientCreditsError",
    "JobAccessDeniedError",
    "JobFailedError",
    "JobNotFoundError",
    "ProfileNotFoundError",
    "RemoteHttpError",
    "StudioJobsError",
    "TaskExecutionError",
    "UpstreamError",
    "WaitCancelledError",
    "BalanceChanged",
    "CreditEventBus",
    "create_jobs_router",
    "SseJobNotifier",
    "StudioJobsHttpClient",
    "CreditLedger",
    "split_deduction",
    "CreditSplit",
    "Job",
    "JobStatus",
    "JobType",
    "ProcessOutcome",
    "Profile",
    "Task",
    "TaskResult",
    "TaskStatus",
    "PostgresJobNotifier",
    "CreditCostTable",
    "JobRegistry",
    "job_registry",
    "JobService",
    "JobStore",
    "PromptStreamConsumer",
    "PromptStreamResult",
    "parse_prompts",
    "wait_for_job",
    "process_job",
    "run_worker_loop",
    "run_worker",
]
