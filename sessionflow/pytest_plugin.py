"""pytest integration for session caching.

Enable it from a conftest or test module::

    pytest_plugins = ["sessionflow.pytest_plugin"]

A pytest session is one run and every test module is one spec: sessions
defined with ``cache_across_specs`` survive module boundaries, all others are
forgotten. Before each test the applied session state is cleared unless
TEST_ISOLATION is off.
"""

from __future__ import annotations

import asyncio

import pytest

from sessionflow.service.queue import CommandQueue
from sessionflow.service.runtime import get_runtime


def pytest_sessionstart(session):
    get_runtime().sessions.start_run()


def pytest_sessionfinish(session, exitstatus):
    get_runtime().context.end_run()


@pytest.fixture(scope="module", autouse=True)
def _sessionflow_spec(request):
    asyncio.run(get_runtime().sessions.start_spec(request.module.__name__))
    yield


@pytest.fixture(autouse=True)
def _sessionflow_isolation(_sessionflow_spec):
    asyncio.run(get_runtime().sessions.before_test())
    yield


@pytest.fixture
def session_manager():
    return get_runtime().sessions


@pytest.fixture
def session_browser():
    return get_runtime().browser


@pytest.fixture
def command_queue():
    return CommandQueue()
