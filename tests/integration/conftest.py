"""Fixtures for tests against a real Postgres.

By default a throwaway Postgres is started with testcontainers. Set
STUDIO_JOBS_TEST_DSN to run against an existing database instead (CI mode).
"""

import logging
import os

import asyncpg
import pytest
import pytest_asyncio

from studio_jobs.config import StudioJobsConfig
from studio_jobs.ddl import SCHEMA_DDL
from studio_jobs.models import CreditBucket
from studio_jobs.registry import JobRegistry
from studio_jobs.service import JobService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@pytest.fixture(scope="session")
def postgres_dsn():
    """DSN of the database under test."""
    external = os.getenv("STUDIO_JOBS_TEST_DSN")
    if external:
        yield external
        return

    pytest.importorskip("testcontainers")
    from testcontainers.postgres import PostgresContainer

    try:
        container = PostgresContainer("postgres:15")
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")
    try:
        url = container.get_connection_url()
        yield url.replace("postgresql+psycopg2://", "postgresql://")
    finally:
        container.stop()


@pytest.fixture
def config(postgres_dsn):
    return StudioJobsConfig(
        db_dsn=postgres_dsn,
        signup_bonus_credits=0,
        wait_poll_interval_seconds=0.2,
    )


@pytest_asyncio.fixture
async def db_pool(config):
    """Pool over a freshly emptied schema."""
    pool = await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_DDL)
        await conn.execute(
            "TRUNCATE credit_transactions, generation_job_tasks, generation_jobs, profiles"
        )

    yield pool

    await pool.close()


@pytest_asyncio.fixture
async def job_service(config, db_pool):
    return JobService(config, db_pool, logging.getLogger("studio_jobs.test"))


@pytest.fixture
def registry():
    """A fresh registry; tests register the handlers they need."""
    return JobRegistry()


@pytest.fixture
def funded_user(job_service):
    """Create a user holding the given credits in each bucket."""

    async def create(user_id="user-1", subscription=0, purchased=0):
        await job_service.register_user(user_id, f"{user_id}@example.com")
        if subscription:
            await job_service.add_credits(user_id, subscription, CreditBucket.SUBSCRIPTION)
        if purchased:
            await job_service.add_credits(user_id, purchased, CreditBucket.PURCHASED)
        return user_id

    return create
