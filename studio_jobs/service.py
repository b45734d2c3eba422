"""High-level service layer for job and credit operations."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple
from uuid import UUID, uuid4

import asyncpg

from studio_jobs.config import StudioJobsConfig
from studio_jobs.errors import JobAccessDeniedError
from studio_jobs.events import BalanceChanged, CreditEventBus
from studio_jobs.ledger import CreditLedger
from studio_jobs.models import CreditBucket, CreditSplit, Job, JobType, Profile, Task, TaskResult
from studio_jobs.pricing import CreditCostTable
from studio_jobs.store import JobStore


class JobService:
    """High-level API for job operations."""

    def __init__(
        self,
        config: StudioJobsConfig,
        db_pool: asyncpg.Pool,
        logger: Optional[logging.Logger] = None,
        event_bus: Optional[CreditEventBus] = None,
    ):
        self.config = config
        self.db_pool = db_pool
        self.store = JobStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)
        self.ledger = CreditLedger(self.logger)
        self.event_bus = event_bus or CreditEventBus(self.logger)
        self._cost_table: Optional[CreditCostTable] = None
        self._signup_bonus: Optional[int] = None

    @property
    def stale_threshold(self) -> timedelta:
        return timedelta(seconds=self.config.stale_threshold_seconds)

    async def get_cost_table(self) -> CreditCostTable:
        """Load the credit cost table once and reuse it."""
        if self._cost_table is None:
            costs = self.config.credit_costs
            if costs is None:
                costs = await self.store.get_config_value("credit_costs")
            self._cost_table = CreditCostTable(costs)
        return self._cost_table

    async def get_signup_bonus(self) -> int:
        """Credits granted on registration; the config wins over system_config."""
        if self.config.signup_bonus_credits is not None:
            return self.config.signup_bonus_credits
        if self._signup_bonus is None:
            value = await self.store.get_config_value("signup_bonus_credits")
            self._signup_bonus = int(value) if value is not None else 0
        return self._signup_bonus

    async def create_job(
        self,
        *,
        user_id: str,
        type: JobType,
        payload: dict[str, Any],
        cost_amount: int,
        trace_id: Optional[str] = None,
        client_job_id: Optional[str] = None,
        fe_attempt: int = 1,
    ) -> Job:
        """
        Charge the user and queue a job, atomically.

        Args:
            user_id: Owner of the job and of the credits
            type: Job type, also used as the task type
            payload: Task input
            cost_amount: Credits to charge, already computed from the cost table
            trace_id: Correlation id for logs
            client_job_id: Idempotency key; a repeat returns the existing job
            fe_attempt: Client-side attempt counter

        Returns:
            Job: The new job, or the earlier one for a repeated client_job_id

        Raises:
            InsufficientCreditsError: If the balance cannot cover cost_amount.
                Nothing is written in that case.
            ProfileNotFoundError: If the user has no profile and the job is paid
        """
        if client_job_id:
            existing = await self.store.find_job_by_client_id(user_id, client_job_id)
            if existing:
                self.logger.info(
                    f"Returning existing job {existing.id} for client_job_id {client_job_id}"
                )
                return existing

        job_id = uuid4()
        profile = None
        try:
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    split = await self.ledger.deduct(conn, user_id, cost_amount)
                    job = await self.store.insert_job(
                        conn,
                        id=job_id,
                        user_id=user_id,
                        type=type,
                        payload=payload,
                        cost_amount=cost_amount,
                        split=split,
                        trace_id=trace_id,
                        client_job_id=client_job_id,
                        fe_attempt=fe_attempt,
                    )
                    await self.store.insert_task(
                        conn,
                        id=uuid4(),
                        job_id=job_id,
                        task_type=type,
                        payload=payload,
                    )
                    if cost_amount > 0:
                        await self.ledger.record_transaction(
                            conn,
                            user_id=user_id,
                            type="deduction",
                            split=split,
                            job_id=job_id,
                            description=f"{JobType(type).value} job",
                        )
                        profile = await self.ledger.get_profile(conn, user_id)
        except asyncpg.UniqueViolationError:
            # Concurrent request with the same idempotency key won the insert.
            existing = await self.store.find_job_by_client_id(user_id, client_job_id)
            if existing is None:
                raise
            return existing

        self.logger.info(
            f"Created job {job_id} for user {user_id}, type {JobType(type).value}, "
            f"cost {cost_amount} (trace_id={trace_id})"
        )
        if profile is not None:
            await self._publish_balance(profile, "deduction", job_id)
        return job

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        return await self.store.get_job(job_id)

    async def get_job_for_user(self, job_id: UUID, user_id: str) -> Job:
        """Get a job owned by ``user_id``; JobAccessDeniedError for anyone else's."""
        job = await self.store.get_job(job_id)
        if job.user_id != user_id:
            raise JobAccessDeniedError(job_id, user_id)
        return job

    async def list_jobs(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters."""
        return await self.store.list_jobs(
            user_id=user_id, status=status, type=type, limit=limit
        )

    async def claim_task(
        self, job_id: UUID, now: Optional[datetime] = None
    ) -> Optional[Task]:
        """Try to claim the job's task. None means someone else holds it or it is done."""
        task = await self.store.claim_task(
            job_id, self.stale_threshold, self.config.max_attempts, now=now
        )
        if task:
            self.logger.info(f"Claimed task for job {job_id} (attempt {task.attempts})")
        return task

    async def list_claimable_job_ids(
        self, limit: int, now: Optional[datetime] = None
    ) -> list[UUID]:
        return await self.store.list_claimable_job_ids(
            self.stale_threshold, limit, now=now
        )

    async def mark_task_succeeded(self, task: Task, result: TaskResult) -> bool:
        """Record the result. Returns False if the claim was superseded."""
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                applied = await self.store.complete_task(conn, task, result)

        if applied:
            self.logger.info(f"Job {task.job_id} succeeded")
        else:
            self.logger.warning(
                f"Discarding result for job {task.job_id}: attempt {task.attempts} "
                f"was superseded by a newer claim"
            )
        return applied

    async def mark_task_retry(
        self, task: Task, error_message: str, backoff_seconds: int
    ) -> bool:
        """Requeue the task to run again after a backoff."""
        run_after = datetime.now(timezone.utc) + timedelta(seconds=backoff_seconds)
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                applied = await self.store.requeue_task(
                    conn, task, error_message, run_after
                )

        if applied:
            self.logger.info(f"Job {task.job_id} scheduled for retry at {run_after}")
        else:
            self.logger.warning(
                f"Not requeueing job {task.job_id}: attempt {task.attempts} was superseded"
            )
        return applied

    async def mark_task_failed(
        self, task: Task, error_code: str, error_message: str
    ) -> bool:
        """Fail task and job and refund the job's credits in one transaction."""
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                applied, profile = await self._fail_and_refund(
                    conn, task, error_code, error_message
                )

        if not applied:
            self.logger.warning(
                f"Not failing job {task.job_id}: attempt {task.attempts} was superseded"
            )
            return False

        self.logger.error(f"Job {task.job_id} failed with {error_code}: {error_message}")
        if profile is not None:
            await self._publish_balance(profile, "refund", task.job_id)
        return True

    async def expire_exhausted_task(
        self, job_id: UUID, now: Optional[datetime] = None
    ) -> bool:
        """
        Fail a job whose stale task has no attempts left, with its refund.

        A worker that dies mid-task leaves it running; once the lock is stale
        and ``max_attempts`` claims were spent, nobody may claim it again and
        this settles the job instead. Returns True if this call failed it.
        """
        max_attempts = self.config.max_attempts
        profile = None
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                task = await self.store.lock_exhausted_task(
                    conn, job_id, self.stale_threshold, max_attempts, now=now
                )
                if task is None:
                    return False
                applied, profile = await self._fail_and_refund(
                    conn,
                    task,
                    "ATTEMPTS_EXHAUSTED",
                    f"Task abandoned after {task.attempts} of {max_attempts} attempts",
                )

        self.logger.error(
            f"Job {job_id} failed: lock went stale on its last attempt "
            f"({task.attempts}/{max_attempts})"
        )
        if profile is not None:
            await self._publish_balance(profile, "refund", job_id)
        return applied

    async def heartbeat(self, task: Task) -> bool:
        """Keep a claim fresh while its handler runs."""
        return await self.store.touch_task(task)

    async def _fail_and_refund(
        self,
        conn: asyncpg.Connection,
        task: Task,
        error_code: str,
        error_message: str,
    ) -> Tuple[bool, Optional[Profile]]:
        applied = await self.store.fail_task(conn, task, error_code, error_message)
        if not applied:
            return False, None
        refunded = await self.ledger.refund(conn, task.job_id)
        if refunded is None:
            return True, None
        user_id = await conn.fetchval(
            "SELECT user_id FROM generation_jobs WHERE id = $1", task.job_id
        )
        return True, await self.ledger.get_profile(conn, user_id)

    async def refund_job(self, job_id: UUID) -> Optional[CreditSplit]:
        """Refund a failed job. Calling it again is a no-op that returns None."""
        profile = None
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                refunded = await self.ledger.refund(conn, job_id)
                if refunded is not None:
                    user_id = await conn.fetchval(
                        "SELECT user_id FROM generation_jobs WHERE id = $1", job_id
                    )
                    profile = await self.ledger.get_profile(conn, user_id)

        if profile is not None:
            await self._publish_balance(profile, "refund", job_id)
        return refunded

    async def get_balance(self, user_id: str) -> Profile:
        async with self.db_pool.acquire() as conn:
            return await self.ledger.get_profile(conn, user_id)

    async def register_user(self, user_id: str, email: Optional[str] = None) -> Profile:
        """
        Create the user's profile with the signup bonus.

        Safe to call on every login: the bonus is granted only by the call
        that actually creates the profile.
        """
        signup_bonus = await self.get_signup_bonus()
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                profile = await self.ledger.create_profile(
                    conn, user_id, email, signup_bonus
                )
                created = profile is not None
                if not created:
                    profile = await self.ledger.get_profile(conn, user_id)

        if created:
            self.logger.info(
                f"Registered user {user_id} with {signup_bonus} bonus credits"
            )
            await self._publish_balance(profile, "signup_bonus")
        return profile

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        bucket: CreditBucket = CreditBucket.PURCHASED,
        description: Optional[str] = None,
    ) -> Profile:
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                profile = await self.ledger.add_credits(
                    conn, user_id, amount, bucket, description
                )
        await self._publish_balance(profile, "grant")
        return profile

    async def grant_subscription(
        self, user_id: str, credits: int, first_subscription_bonus: int = 0
    ) -> Profile:
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                profile = await self.ledger.grant_subscription(
                    conn, user_id, credits, first_subscription_bonus
                )
        await self._publish_balance(profile, "subscription")
        return profile

    async def _publish_balance(
        self, profile: Profile, reason: str, job_id: Optional[UUID] = None
    ) -> None:
        await self.event_bus.publish(
            BalanceChanged(
                user_id=profile.id,
                subscription_credits=profile.subscription_credits,
                purchased_credits=profile.purchased_credits,
                reason=reason,
                job_id=job_id,
            )
        )
