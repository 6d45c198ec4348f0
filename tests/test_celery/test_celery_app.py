"""Tests for Celery app configuration, the fork task and the Celery backend."""

import asyncio
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from taskengine.fork.backends import LocalExecutionBackend, default_backend
from taskengine.fork.celery_backend import CeleryExecutionBackend
from taskengine.fork.manager import ForkManager
from taskengine.llm.mock_caller import MockModelCaller
from taskengine.models.session import ForkAgentTask


class TestCeleryAppConfig:
    """Test Celery application setup."""

    def test_is_celery_enabled_false_when_empty(self):
        """Celery is disabled when broker URL is empty."""
        with patch("taskengine.celery_app.settings") as mock_settings:
            mock_settings.celery_broker_url = ""
            from taskengine.celery_app import is_celery_enabled
            assert not is_celery_enabled()

    def test_is_celery_enabled_true_when_set(self):
        """Celery is enabled when broker URL is set."""
        with patch("taskengine.celery_app.settings") as mock_settings:
            mock_settings.celery_broker_url = "redis://localhost:6379/0"
            from taskengine.celery_app import is_celery_enabled
            assert is_celery_enabled()

    def test_create_celery_app_returns_celery_instance(self):
        from taskengine.celery_app import create_celery_app
        app = create_celery_app()
        assert app.main == "taskengine"

    def test_celery_app_config_defaults(self):
        from taskengine.celery_app import celery_app
        assert celery_app.conf.task_serializer == "json"
        assert celery_app.conf.timezone == "UTC"
        assert celery_app.conf.enable_utc is True
        assert celery_app.conf.task_track_started is True

    def test_celery_task_routes(self):
        """Fork tasks route to the forks queue."""
        from taskengine.celery_app import celery_app
        routes = celery_app.conf.task_routes
        assert routes["taskengine.tasks.fork_tasks.*"]["queue"] == "forks"


class TestForkTask:
    """Test the fork task and its runtime factory."""

    def test_run_fork_task_registration(self):
        from taskengine.tasks.fork_tasks import run_fork_task
        assert run_fork_task.name == "taskengine.tasks.fork_tasks.run_fork_task"
        assert run_fork_task.max_retries == 0

    def test_load_runtime_factory_resolves_callable(self):
        from taskengine.tasks.fork_tasks import load_runtime_factory
        assert load_runtime_factory("os.path:join") is os.path.join

    @pytest.mark.parametrize("path", ["", "os.path", "os.path:sep"])
    def test_load_runtime_factory_rejects_bad_paths(self, path):
        from taskengine.tasks.fork_tasks import RuntimeFactoryError, load_runtime_factory
        with pytest.raises(RuntimeFactoryError):
            load_runtime_factory(path)

    def test_run_fork_task_executes_stored_task(self, storage, registry):
        from taskengine.tasks.fork_tasks import run_fork_task

        task = asyncio.run(storage.create_fork_task(
            ForkAgentTask(parent_session_id="p1", goal="look up rate", depth=1),
        ))
        model = MockModelCaller(routes={"Goal: look up rate": [{"action": "Finish", "final_result": "1.08"}]})

        def build_manager():
            return ForkManager(storage, model, tools=registry, backend=LocalExecutionBackend())

        with patch("taskengine.tasks.fork_tasks.load_runtime_factory", return_value=build_manager):
            outcome = run_fork_task.apply(args=[task.id]).get()

        assert outcome["status"] == "completed"
        assert outcome["summary"] == "1.08"
        stored = asyncio.run(storage.get_fork_task(task.id))
        assert stored.status == "completed"
        assert stored.sub_session_id == outcome["sub_session_id"]


class TestCeleryBackend:
    """Test dispatch through the Celery execution backend."""

    @pytest.mark.asyncio
    async def test_execute_dispatches_by_task_id(self, storage):
        task = await storage.create_fork_task(ForkAgentTask(parent_session_id="p1", goal="g", depth=1))
        backend = CeleryExecutionBackend(storage, poll_interval=0.01)

        with patch("taskengine.tasks.fork_tasks.run_fork_task") as mock_task:
            mock_task.delay.return_value = MagicMock(id="celery-1", ready=MagicMock(return_value=False))
            await backend.execute_sub_agent(task, job=None)
            mock_task.delay.assert_called_once_with(task.id)

        assert backend.is_running(task.id)
        assert await backend.cancel(task.id)
        mock_task.delay.return_value.revoke.assert_called_once_with(terminate=False)
        assert not await backend.cancel(task.id)
        assert not backend.is_running(task.id)

    @pytest.mark.asyncio
    async def test_wait_for_completion_polls_storage(self, storage):
        task = await storage.create_fork_task(ForkAgentTask(parent_session_id="p1", goal="g", depth=1))
        backend = CeleryExecutionBackend(storage, poll_interval=0.01)

        assert not await backend.wait_for_completion(task.id, timeout=0.05)
        await storage.update_fork_task(task.id, status="completed")
        assert await backend.wait_for_completion(task.id, timeout=0.05)

    def test_default_backend_follows_broker_setting(self, storage):
        with patch("taskengine.celery_app.is_celery_enabled", return_value=True):
            assert isinstance(default_backend(storage), CeleryExecutionBackend)
        with patch("taskengine.celery_app.is_celery_enabled", return_value=False):
            assert isinstance(default_backend(storage), LocalExecutionBackend)
