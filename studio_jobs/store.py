"""Database store layer for generation jobs and their tasks."""

import json
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import asyncpg

from studio_jobs.errors import JobNotFoundError
from studio_jobs.models import (
    CreditSplit,
    Job,
    JobStatus,
    JobType,
    Task,
    TaskResult,
    TaskStatus,
)

JOB_UPDATES_CHANNEL = "generation_job_updates"

# Both arms of the claimable predicate. $2 is the clock, $3 the stale threshold.
_CLAIMABLE = """
(
    (t.status = 'queued' AND t.run_after <= COALESCE($2::timestamptz, now()))
    OR (
        t.status = 'running'
        AND COALESCE(t.locked_at, '-infinity'::timestamptz)
            <= COALESCE($2::timestamptz, now()) - $3::interval
    )
)
"""


class JobStore:
    """Database layer for job and task operations.

    Methods taking a ``conn`` run on the caller's connection so they can share
    a transaction; the rest acquire their own connection from the pool.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_job(
        self,
        conn: asyncpg.Connection,
        *,
        id: UUID,
        user_id: str,
        type: JobType,
        payload: dict[str, Any],
        cost_amount: int,
        split: CreditSplit,
        trace_id: Optional[str] = None,
        client_job_id: Optional[str] = None,
        fe_attempt: int = 1,
    ) -> Job:
        """Insert a new job in the processing state."""
        row = await conn.fetchrow(
            """
            INSERT INTO generation_jobs (
                id, user_id, type, status, payload, cost_amount,
                subscription_deducted, purchased_deducted,
                trace_id, client_job_id, fe_attempt
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING *
            """,
            id,
            user_id,
            JobType(type).value,
            JobStatus.PROCESSING.value,
            json.dumps(payload),
            cost_amount,
            split.subscription,
            split.purchased,
            trace_id,
            client_job_id,
            fe_attempt,
        )
        return self._row_to_job(row)

    async def insert_task(
        self,
        conn: asyncpg.Connection,
        *,
        id: UUID,
        job_id: UUID,
        task_type: JobType,
        payload: dict[str, Any],
    ) -> Task:
        """Insert the job's task as queued and immediately runnable."""
        row = await conn.fetchrow(
            """
            INSERT INTO generation_job_tasks (id, job_id, task_type, status, payload)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
            """,
            id,
            job_id,
            JobType(task_type).value,
            TaskStatus.QUEUED.value,
            json.dumps(payload),
        )
        return self._row_to_task(row)

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM generation_jobs WHERE id = $1", job_id
            )

        if not row:
            raise JobNotFoundError(job_id)

        return self._row_to_job(row)

    async def find_job_by_client_id(
        self,
        user_id: str,
        client_job_id: str,
        conn: Optional[asyncpg.Connection] = None,
    ) -> Optional[Job]:
        """Find a job previously created with the same idempotency key."""
        query = """
            SELECT * FROM generation_jobs
            WHERE user_id = $1 AND client_job_id = $2
        """
        if conn is not None:
            row = await conn.fetchrow(query, user_id, client_job_id)
        else:
            async with self.db_pool.acquire() as conn:
                row = await conn.fetchrow(query, user_id, client_job_id)
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters, newest first."""
        query = "SELECT * FROM generation_jobs WHERE 1=1"
        params = []
        param_idx = 1

        if user_id:
            query += f" AND user_id = ${param_idx}"
            params.append(user_id)
            param_idx += 1

        if status:
            query += f" AND status = ${param_idx}"
            params.append(status)
            param_idx += 1

        if type:
            query += f" AND type = ${param_idx}"
            params.append(type)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def get_task(self, job_id: UUID) -> Optional[Task]:
        """Get the task belonging to a job."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM generation_job_tasks WHERE job_id = $1", job_id
            )
        return self._row_to_task(row) if row else None

    async def claim_task(
        self,
        job_id: UUID,
        stale_threshold: timedelta,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> Optional[Task]:
        """
        Claim a job's task with a single conditional update.

        The task matches when it is queued and due, or running with a lock
        at least ``stale_threshold`` old and attempts left. A racing caller
        updates zero rows and gets None. ``now`` overrides the database clock.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE generation_job_tasks t
                SET status = 'running',
                    attempts = t.attempts + 1,
                    locked_at = COALESCE($2::timestamptz, now()),
                    updated_at = now()
                WHERE t.job_id = $1
                  AND {_CLAIMABLE}
                  AND (t.status = 'queued' OR t.attempts < $4)
                RETURNING t.*
                """,
                job_id,
                now,
                stale_threshold,
                max_attempts,
            )

        return self._row_to_task(row) if row else None

    async def lock_exhausted_task(
        self,
        conn: asyncpg.Connection,
        job_id: UUID,
        stale_threshold: timedelta,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> Optional[Task]:
        """
        Lock a stale running task that has used up its attempts.

        Such a task can no longer be claimed; the caller fails it in the
        same transaction. A concurrent caller waits on the row lock and then
        finds nothing.
        """
        row = await conn.fetchrow(
            f"""
            SELECT t.* FROM generation_job_tasks t
            WHERE t.job_id = $1
              AND {_CLAIMABLE}
              AND t.status = 'running'
              AND t.attempts >= $4
            FOR UPDATE
            """,
            job_id,
            now,
            stale_threshold,
            max_attempts,
        )
        return self._row_to_task(row) if row else None

    async def touch_task(self, task: Task) -> bool:
        """Refresh the claim's lock. False once the claim was superseded or settled."""
        async with self.db_pool.acquire() as conn:
            touched = await conn.fetchval(
                """
                UPDATE generation_job_tasks
                SET locked_at = now(), updated_at = now()
                WHERE id = $1 AND status = 'running' AND attempts = $2
                RETURNING id
                """,
                task.id,
                task.attempts,
            )
        return touched is not None

    async def list_claimable_job_ids(
        self,
        stale_threshold: timedelta,
        limit: int,
        now: Optional[datetime] = None,
    ) -> list[UUID]:
        """Job ids whose task could be claimed right now, oldest run_after first."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT t.job_id FROM generation_job_tasks t
                WHERE {_CLAIMABLE}
                ORDER BY t.run_after ASC
                LIMIT $1
                """,
                limit,
                now,
                stale_threshold,
            )
        return [row["job_id"] for row in rows]

    async def complete_task(
        self, conn: asyncpg.Connection, task: Task, result: TaskResult
    ) -> bool:
        """
        Mark task and job as succeeded.

        Fenced on the claimed attempt: returns False, writing nothing, when
        another worker has since reclaimed the task.
        """
        fenced = await conn.fetchval(
            """
            UPDATE generation_job_tasks
            SET status = 'success', locked_at = NULL, updated_at = now()
            WHERE id = $1 AND status = 'running' AND attempts = $2
            RETURNING id
            """,
            task.id,
            task.attempts,
        )
        if fenced is None:
            return False

        await conn.execute(
            """
            UPDATE generation_jobs
            SET status = 'success',
                result_data = $2,
                result_url = $3,
                error_code = $4,
                error_message = $5,
                duration_ms = (EXTRACT(EPOCH FROM (now() - created_at)) * 1000)::int,
                updated_at = now()
            WHERE id = $1 AND status = 'processing'
            """,
            task.job_id,
            json.dumps(result.result_data),
            result.result_url,
            result.error_code,
            result.error_message,
        )
        await self.notify_job_update(conn, task.job_id, JobStatus.SUCCESS)
        return True

    async def requeue_task(
        self,
        conn: asyncpg.Connection,
        task: Task,
        error_message: str,
        run_after: datetime,
    ) -> bool:
        """Put a failed attempt back in the queue to run after ``run_after``."""
        fenced = await conn.fetchval(
            """
            UPDATE generation_job_tasks
            SET status = 'queued',
                locked_at = NULL,
                run_after = $3,
                last_error = $4,
                updated_at = now()
            WHERE id = $1 AND status = 'running' AND attempts = $2
            RETURNING id
            """,
            task.id,
            task.attempts,
            run_after,
            error_message,
        )
        if fenced is None:
            return False

        await conn.execute(
            """
            UPDATE generation_jobs
            SET be_retry = be_retry + 1, updated_at = now()
            WHERE id = $1 AND status = 'processing'
            """,
            task.job_id,
        )
        return True

    async def fail_task(
        self,
        conn: asyncpg.Connection,
        task: Task,
        error_code: str,
        error_message: str,
    ) -> bool:
        """Mark task and job as failed. The caller refunds in the same transaction."""
        fenced = await conn.fetchval(
            """
            UPDATE generation_job_tasks
            SET status = 'failed',
                locked_at = NULL,
                last_error = $3,
                updated_at = now()
            WHERE id = $1 AND status = 'running' AND attempts = $2
            RETURNING id
            """,
            task.id,
            task.attempts,
            error_message,
        )
        if fenced is None:
            return False

        await conn.execute(
            """
            UPDATE generation_jobs
            SET status = 'failed',
                error_code = $2,
                error_message = $3,
                duration_ms = (EXTRACT(EPOCH FROM (now() - created_at)) * 1000)::int,
                updated_at = now()
            WHERE id = $1 AND status = 'processing'
            """,
            task.job_id,
            error_code,
            error_message,
        )
        await self.notify_job_update(conn, task.job_id, JobStatus.FAILED)
        return True

    async def notify_job_update(
        self, conn: asyncpg.Connection, job_id: UUID, status: JobStatus
    ) -> None:
        """Queue a NOTIFY; Postgres delivers it when the transaction commits."""
        await conn.execute(
            "SELECT pg_notify($1, $2)",
            JOB_UPDATES_CHANNEL,
            json.dumps({"job_id": str(job_id), "status": JobStatus(status).value}),
        )

    async def get_config_value(self, key: str) -> Any:
        """Read one entry of the system_config table."""
        async with self.db_pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT value FROM system_config WHERE key = $1", key
            )
        if isinstance(value, str):
            return json.loads(value)
        return value

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            user_id=row["user_id"],
            type=JobType(row["type"]),
            status=JobStatus(row["status"]),
            payload=_json_column(row["payload"]) or {},
            cost_amount=row["cost_amount"],
            subscription_deducted=row["subscription_deducted"],
            purchased_deducted=row["purchased_deducted"],
            is_refunded=row["is_refunded"],
            result_data=_json_column(row["result_data"]),
            result_url=row["result_url"],
            error_code=row["error_code"],
            error_message=row["error_message"],
            trace_id=row["trace_id"],
            client_job_id=row["client_job_id"],
            fe_attempt=row["fe_attempt"],
            be_retry=row["be_retry"],
            duration_ms=row["duration_ms"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_task(self, row: asyncpg.Record) -> Task:
        """Convert a database row to a Task model."""
        return Task(
            id=row["id"],
            job_id=row["job_id"],
            task_type=JobType(row["task_type"]),
            status=TaskStatus(row["status"]),
            payload=_json_column(row["payload"]) or {},
            attempts=row["attempts"],
            locked_at=row["locked_at"],
            run_after=row["run_after"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _json_column(value: Any) -> Any:
    if value is not None and isinstance(value, str):
        return json.loads(value)
    return value
