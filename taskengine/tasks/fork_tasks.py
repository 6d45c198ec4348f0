"""Celery tasks for fork execution.

The worker has no access to the parent's in-memory objects, so it rebuilds a
ForkManager from ``settings.fork_runtime_factory`` ("package.module:callable")
and runs the stored fork task by id inside asyncio.run(). Each task gets its
own event loop.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import TYPE_CHECKING

from taskengine.celery_app import celery_app
from taskengine.config import settings

if TYPE_CHECKING:
    from taskengine.fork.manager import ForkManager

logger = logging.getLogger(__name__)


class RuntimeFactoryError(RuntimeError):
    """fork_runtime_factory is missing or does not resolve to a callable."""


def load_runtime_factory(path: str | None = None):
    """Resolve ``package.module:callable`` to the callable building a ForkManager."""
    path = path if path is not None else settings.fork_runtime_factory
    if not path or ":" not in path:
        raise RuntimeFactoryError(
            "TASKENGINE_FORK_RUNTIME_FACTORY must be set to 'package.module:callable' to run forks on Celery"
        )
    module_name, attr = path.split(":", 1)
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise RuntimeFactoryError(f"{path} is not callable")
    return factory


@celery_app.task(
    name="taskengine.tasks.fork_tasks.run_fork_task",
    bind=True,
    max_retries=0,
)
def run_fork_task(self, task_id: str) -> dict:
    """Execute one stored fork task to a terminal status."""
    logger.info("Celery fork task started: %s (celery_id=%s)", task_id, self.request.id)

    try:
        result = asyncio.run(_execute_fork(task_id))
        logger.info("Celery fork task finished: %s -> %s", task_id, result["status"])
        return result
    except Exception as exc:
        logger.error("Celery fork task failed: %s: %s", task_id, exc, exc_info=True)
        raise


async def _execute_fork(task_id: str) -> dict:
    manager: ForkManager = load_runtime_factory()()
    try:
        result = await manager.run_task(task_id)
    finally:
        await manager.shutdown()
    return result.model_dump(mode="json")
