"""Unit tests for registry module."""

import pytest

from studio_jobs.models import JobType
from studio_jobs.registry import JobRegistry, job_registry


def test_registry_handler_decorator():
    """Test registering a handler with decorator."""
    registry = JobRegistry()

    @registry.handler(JobType.ANALYSIS)
    async def analyze(ctx, payload):
        pass

    assert registry.get_handler(JobType.ANALYSIS) is analyze
    assert registry.get_handler("ANALYSIS") is analyze


def test_registry_get_nonexistent_handler():
    """Test getting a handler that doesn't exist."""
    registry = JobRegistry()

    assert registry.get_handler(JobType.IMAGE_GEN) is None


def test_registry_rejects_unknown_type():
    registry = JobRegistry()

    with pytest.raises(ValueError):

        @registry.handler("SEND_EMAIL")
        async def send_email(ctx, payload):
            pass


def test_registry_all_handlers_is_a_copy():
    registry = JobRegistry()

    @registry.handler(JobType.IMAGE_GEN)
    async def generate(ctx, payload):
        pass

    handlers = registry.all_handlers()
    handlers.clear()

    assert list(registry.all_handlers()) == ["IMAGE_GEN"]


def test_builtin_handlers_register_every_type():
    import studio_jobs.handlers  # noqa: F401

    assert set(job_registry.all_handlers()) == {t.value for t in JobType}
