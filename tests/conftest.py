"""Shared fixtures: quiet console, in-memory cache, executors wired to fakes."""

from __future__ import annotations

import pytest

from fakes import FakeCheckout, FakeInstaller
from flowci.cache import CacheManager, MemoryCacheStore
from flowci.executor import StepExecutor, executor_factory
from flowci.model import Event, EventKind
from flowci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def _quiet_console():
    """Keep progress output out of test logs."""
    set_console(Console(quiet=True))
    yield
    set_console(Console())


@pytest.fixture
def store() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture
def cache_manager(store) -> CacheManager:
    return CacheManager(store)


@pytest.fixture
def push_master() -> Event:
    return Event(kind=EventKind.PUSH, branch="master", ref="abc123")


@pytest.fixture
def make_executor(tmp_path, cache_manager, push_master):
    """Build a StepExecutor over tmp_path; keyword arguments override the defaults."""

    def _make(**overrides) -> StepExecutor:
        kwargs = dict(
            workspace=tmp_path,
            cache=cache_manager,
            checkout=FakeCheckout(),
            installer=FakeInstaller(),
            event=push_master,
            poll_interval=0.02,
        )
        kwargs.update(overrides)
        return StepExecutor(**kwargs)

    return _make


@pytest.fixture
def factory(tmp_path, cache_manager, push_master):
    """Executor factory for the scheduler, wired to fakes."""
    return executor_factory(
        workspace=tmp_path,
        cache=cache_manager,
        checkout=FakeCheckout(),
        installer=FakeInstaller(),
        event=push_master,
    )
