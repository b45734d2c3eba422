"""Worker logic: the claim protocol and the polling loop."""

import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Awaitable, Optional
from uuid import UUID

import asyncpg

from studio_jobs.config import StudioJobsConfig
from studio_jobs.errors import TaskExecutionError
from studio_jobs.models import ProcessOutcome, Task, TaskResult
from studio_jobs.registry import JobRegistry
from studio_jobs.service import JobService


async def process_job(
    job_service: JobService,
    registry: JobRegistry,
    job_id: UUID,
    logger: logging.Logger,
    upstream: Any = None,
    now: Optional[datetime] = None,
) -> ProcessOutcome:
    """
    Run one pass of the claim protocol for a job.

    Claims the job's task, runs its handler and records the outcome. Safe to
    call from any number of workers at once: only the caller that wins the
    claim executes the task.

    Args:
        job_service: Service used for every database write
        registry: Task handler registry
        job_id: Job to process
        logger: Logger instance
        upstream: AI client handed to handlers through their context
        now: Clock override for the claim

    Returns:
        ProcessOutcome describing what happened

    Raises:
        JobNotFoundError: If the job does not exist
    """
    task = await job_service.claim_task(job_id, now=now)
    if task is None:
        if await job_service.expire_exhausted_task(job_id, now=now):
            return ProcessOutcome.FAILED
        job = await job_service.get_job(job_id)
        if job.is_terminal:
            return ProcessOutcome.ALREADY_TERMINAL
        return ProcessOutcome.NO_AVAILABLE_TASK

    job = await job_service.get_job(job_id)
    max_attempts = job_service.config.max_attempts

    if task.attempts > max_attempts:
        applied = await job_service.mark_task_failed(
            task,
            "ATTEMPTS_EXHAUSTED",
            f"Claim {task.attempts} is past the limit of {max_attempts} attempts",
        )
        return ProcessOutcome.FAILED if applied else ProcessOutcome.SUPERSEDED

    handler = registry.get_handler(task.task_type)
    if not handler:
        logger.error(f"No handler found for task type {task.task_type.value}")
        applied = await job_service.mark_task_failed(
            task, "HANDLER_MISSING", f"No handler for type {task.task_type.value}"
        )
        return ProcessOutcome.FAILED if applied else ProcessOutcome.SUPERSEDED

    logger.info(
        f"Executing job {job_id} (type={task.task_type.value}, attempt={task.attempts}/{max_attempts}, "
        f"trace_id={job.trace_id})"
    )

    try:
        ctx = {
            "job": job,
            "task": task,
            "logger": logger,
            "upstream": upstream,
            "config": job_service.config,
        }
        result = await _run_with_heartbeat(
            job_service, task, handler(ctx, task.payload), logger
        )
    except Exception as e:
        logger.error(f"Job {job_id} failed: {str(e)}", exc_info=True)

        if isinstance(e, TaskExecutionError):
            error_code, error_message, retryable = e.code, e.message, e.retryable
        else:
            error_code, error_message, retryable = "UPSTREAM_ERROR", str(e), True

        if retryable and task.attempts < max_attempts:
            backoff_seconds = _calculate_backoff_with_jitter(
                job_service.config.backoff_policy, task.attempts
            )
            applied = await job_service.mark_task_retry(
                task, f"{error_code}: {error_message}", backoff_seconds
            )
            if applied:
                logger.info(
                    f"Job {job_id} will retry (attempt {task.attempts}/"
                    f"{max_attempts}) after {backoff_seconds}s"
                )
                return ProcessOutcome.REQUEUED
            return ProcessOutcome.SUPERSEDED

        applied = await job_service.mark_task_failed(task, error_code, error_message)
        if applied:
            logger.error(f"Job {job_id} marked as failed after {task.attempts} attempts")
            return ProcessOutcome.FAILED
        return ProcessOutcome.SUPERSEDED

    if result is None:
        result = TaskResult()
    applied = await job_service.mark_task_succeeded(task, result)
    return ProcessOutcome.PROCESSED if applied else ProcessOutcome.SUPERSEDED


async def _run_with_heartbeat(
    job_service: JobService, task: Task, call: Awaitable[Any], logger: logging.Logger
) -> Any:
    """Await a handler while refreshing the claim's lock in the background."""
    heartbeat = asyncio.create_task(_keep_claim_fresh(job_service, task, logger))
    try:
        return await call
    finally:
        heartbeat.cancel()
        await asyncio.gather(heartbeat, return_exceptions=True)


async def _keep_claim_fresh(
    job_service: JobService, task: Task, logger: logging.Logger
) -> None:
    interval = job_service.config.heartbeat_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            alive = await job_service.heartbeat(task)
        except Exception as e:
            logger.warning(f"Heartbeat for job {task.job_id} failed: {e}")
            continue
        if not alive:
            logger.warning(
                f"Claim on job {task.job_id} (attempt {task.attempts}) was lost, "
                f"its result will be discarded"
            )
            return


async def run_worker_loop(
    config: StudioJobsConfig,
    db_pool: asyncpg.Pool,
    registry: JobRegistry,
    logger: logging.Logger,
    upstream: Any = None,
    shutdown_event: asyncio.Event = None,
    job_service: Optional[JobService] = None,
) -> None:
    """
    Poll for claimable tasks and process them until shutdown.

    At most ``config.worker_max_concurrent`` jobs run at once. The database
    arbitrates between workers, so any number of these loops may run.

    Args:
        config: Studio jobs configuration
        db_pool: Database connection pool
        registry: Task handler registry
        logger: Logger instance
        upstream: AI client passed to handlers
        shutdown_event: Optional event to signal shutdown
        job_service: Optional pre-built service
    """
    job_service = job_service or JobService(config, db_pool, logger)
    in_flight: dict[UUID, asyncio.Task] = {}

    logger.info(
        f"Starting worker loop (max_concurrent={config.worker_max_concurrent}, "
        f"stale_threshold={config.stale_threshold_seconds}s)"
    )

    async def run_one(job_id: UUID) -> None:
        try:
            outcome = await process_job(job_service, registry, job_id, logger, upstream)
            logger.debug(f"Job {job_id}: {outcome.value}")
        except Exception as e:
            logger.error(f"Error processing job {job_id}: {str(e)}", exc_info=True)
        finally:
            in_flight.pop(job_id, None)

    try:
        while True:
            # Check for shutdown signal
            if shutdown_event and shutdown_event.is_set():
                logger.info("Shutdown signal received, exiting worker loop")
                break

            try:
                free_slots = config.worker_max_concurrent - len(in_flight)
                job_ids = []
                if free_slots > 0:
                    job_ids = await job_service.list_claimable_job_ids(
                        min(config.worker_batch_size, free_slots)
                    )

                started = 0
                for job_id in job_ids:
                    if job_id in in_flight or started >= free_slots:
                        continue
                    in_flight[job_id] = asyncio.create_task(run_one(job_id))
                    started += 1

                if started == 0:
                    await _sleep_until_shutdown(
                        shutdown_event, config.worker_poll_interval_seconds
                    )
                else:
                    logger.info(f"Started {started} jobs ({len(in_flight)} in flight)")
                    await asyncio.sleep(0)

            except Exception as e:
                logger.error(f"Error in worker loop: {str(e)}", exc_info=True)
                await asyncio.sleep(5)  # Brief pause before retrying
    finally:
        if in_flight:
            logger.info(f"Waiting for {len(in_flight)} in-flight jobs to finish")
            await asyncio.gather(*in_flight.values(), return_exceptions=True)


async def _sleep_until_shutdown(shutdown_event: Optional[asyncio.Event], seconds: float) -> None:
    if shutdown_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


def _calculate_backoff_with_jitter(backoff_policy: dict[str, Any], attempt: int) -> int:
    """
    Calculate backoff delay with jitter based on policy and attempt number.

    Args:
        backoff_policy: Backoff policy configuration
        attempt: Attempt that just failed (1-indexed)

    Returns:
        Backoff delay in seconds with jitter applied
    """
    base_delay = _calculate_backoff(backoff_policy, attempt)

    # ±20% jitter
    jitter_factor = 1.0 + random.uniform(-0.2, 0.2)
    jittered_delay = int(base_delay * jitter_factor)

    return max(1, jittered_delay)


def _calculate_backoff(backoff_policy: dict[str, Any], attempt: int) -> int:
    """Backoff delay in seconds for exponential, linear or constant policies, capped at an hour."""
    policy_type = backoff_policy.get("type", "exponential")
    base_seconds = backoff_policy.get("base_seconds", 10)

    if policy_type == "linear":
        return min(base_seconds * attempt, 3600)
    if policy_type == "constant":
        return base_seconds
    return min(base_seconds * (2 ** (attempt - 1)), 3600)
