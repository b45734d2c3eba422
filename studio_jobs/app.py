"""ASGI application wiring the jobs router to a database pool.

Run with ``uvicorn studio_jobs.app:create_app --factory``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from studio_jobs.config import StudioJobsConfig
from studio_jobs.events import CreditEventBus
from studio_jobs.fastapi_router import create_jobs_router
from studio_jobs.notifier import PostgresJobNotifier
from studio_jobs.registry import job_registry
from studio_jobs.service import JobService
from studio_jobs.upstream import UpstreamAIClient
from studio_jobs.worker_main import create_db_pool, load_handlers

logger = logging.getLogger(__name__)


def create_app(config: Optional[StudioJobsConfig] = None, db_pool=None) -> FastAPI:
    """
    Build the FastAPI app.

    The pool is created on startup unless one is passed in. Without upstream
    settings the app still serves job and credit calls, while nudges and
    prompt streaming answer 503 and jobs wait for the polling workers.
    """
    config = config or StudioJobsConfig.from_env()
    event_bus = CreditEventBus(logger)
    state = {"pool": db_pool, "service": None}
    notifier = PostgresJobNotifier(config.db_dsn, logger=logger)

    upstream = None
    if config.upstream_chat_url and config.upstream_image_url and config.upstream_api_key:
        upstream = UpstreamAIClient.from_config(config, logger)
        load_handlers()
    else:
        logger.warning("Upstream AI endpoint not configured, nudges cannot run handlers")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_pool = state["pool"] is None
        if owns_pool:
            state["pool"] = await create_db_pool(config)
        state["service"] = JobService(config, state["pool"], logger, event_bus=event_bus)
        logger.info("Studio jobs API started")
        try:
            yield
        finally:
            await notifier.close()
            if owns_pool:
                await state["pool"].close()
            logger.info("Studio jobs API stopped")

    app = FastAPI(title="Studio Jobs", lifespan=lifespan)
    app.include_router(
        create_jobs_router(
            lambda: state["service"],
            auth_token=config.auth_token,
            registry=job_registry,
            upstream=upstream,
            notifier_factory=lambda: notifier,
        )
    )
    return app
