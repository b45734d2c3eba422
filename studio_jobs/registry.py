"""Task handler registry."""

from collections.abc import Callable
from typing import Optional, Union

from studio_jobs.models import JobType


class JobRegistry:
    """Registry for task handlers, keyed by task type."""

    def __init__(self):
        self._handlers: dict[str, Callable] = {}

    def handler(self, task_type: Union[str, JobType]):
        """
        Decorator to register a task handler.

        Usage:
            @registry.handler(JobType.IMAGE_GEN)
            async def generate_image(ctx, payload):
                ...
                return TaskResult(...)
        """

        def decorator(func: Callable):
            self._handlers[JobType(task_type).value] = func
            return func

        return decorator

    def get_handler(self, task_type: Union[str, JobType]) -> Optional[Callable]:
        """Get a handler by task type."""
        return self._handlers.get(JobType(task_type).value)

    def all_handlers(self) -> dict[str, Callable]:
        """Get all registered handlers."""
        return self._handlers.copy()


# Global registry instance
job_registry = JobRegistry()
