"""Wait for a job to finish using a push channel and polling together."""

import asyncio
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional, Protocol

from studio_jobs.errors import JobFailedError, WaitCancelledError
from studio_jobs.models import Job, JobStatus

TERMINAL_STATUSES = {JobStatus.SUCCESS.value, JobStatus.FAILED.value}


class JobNotifier(Protocol):
    """Anything that can stream status-change events for one job."""

    def watch(self, job_id: Any) -> AsyncGenerator[Dict[str, Any], None]:
        ...


JobFetcher = Callable[[Any], Awaitable[Job]]


def _resolve(job: Job) -> Job:
    if job.status == JobStatus.FAILED:
        raise JobFailedError(job)
    return job


async def wait_for_job(
    job_id: Any,
    *,
    fetch_job: JobFetcher,
    notifier: Optional[JobNotifier] = None,
    poll_interval: float = 2.0,
    timeout: Optional[float] = None,
    cancel_event: Optional[asyncio.Event] = None,
    logger: Optional[logging.Logger] = None,
) -> Job:
    """
    Block until the job is terminal.

    The job is checked once up front, so waiting on a finished job returns
    immediately. After that a push channel (``notifier``) and a poll loop run
    side by side and the first to see a terminal state wins. Errors from
    either channel are logged and do not end the wait.

    Args:
        job_id: Job to wait for
        fetch_job: Coroutine returning the current job
        notifier: Optional push channel
        poll_interval: Seconds between polls
        timeout: Optional limit on the whole wait, in seconds
        cancel_event: Set it to stop waiting
        logger: Logger instance

    Returns:
        Job: The job, in the success state

    Raises:
        JobFailedError: If the job failed
        WaitCancelledError: If cancel_event was set or the timeout passed.
            The job itself is unaffected.
    """
    logger = logger or logging.getLogger(__name__)

    job = await fetch_job(job_id)
    if job.is_terminal:
        return _resolve(job)

    loop = asyncio.get_running_loop()
    settled: asyncio.Future = loop.create_future()

    def settle(job: Job) -> None:
        if not settled.done():
            settled.set_result(job)

    async def poll() -> None:
        while True:
            await asyncio.sleep(poll_interval)
            try:
                job = await fetch_job(job_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Polling job {job_id} failed: {e}")
                continue
            if job.is_terminal:
                settle(job)
                return

    async def listen() -> None:
        events = notifier.watch(job_id)
        try:
            async for event in events:
                if event.get("status") not in TERMINAL_STATUSES:
                    continue
                job = await fetch_job(job_id)
                if job.is_terminal:
                    settle(job)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Push channel for job {job_id} dropped, continuing with polling: {e}")
        finally:
            # Unregisters from the push channel.
            await events.aclose()

    channels = [asyncio.create_task(poll())]
    if notifier is not None:
        channels.append(asyncio.create_task(listen()))
    cancel_waiter = asyncio.create_task(cancel_event.wait()) if cancel_event else None

    try:
        waiting_on = {settled}
        if cancel_waiter:
            waiting_on.add(cancel_waiter)
        await asyncio.wait(waiting_on, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

        if settled.done():
            return _resolve(settled.result())
        if cancel_waiter and cancel_waiter.done():
            raise WaitCancelledError(job_id, "cancelled")
        raise WaitCancelledError(job_id, "timeout")
    finally:
        pending = channels + ([cancel_waiter] if cancel_waiter else [])
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
