"""Pytest configuration shared by the licensing test suite.

Async tests are marked with ``@pytest.mark.asyncio``. When pytest-asyncio is
not installed the fallback hook below runs them on a fresh event loop.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Iterator
from typing import Any

import pytest

import config.settings as settings_module
from config.settings import Settings


def pytest_configure(config: pytest.Config) -> None:
    """Register local markers used in the suite."""
    config.addinivalue_line("markers", "asyncio: mark test as asyncio-compatible")


def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Run coroutine tests via ``asyncio.run`` when no async plugin claimed them."""
    if pyfuncitem.get_closest_marker("asyncio") is None:
        return None

    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None

    kwargs: dict[str, Any] = {
        arg: pyfuncitem.funcargs[arg]
        for arg in pyfuncitem._fixtureinfo.argnames
    }
    asyncio.run(test_func(**kwargs))
    return True


@pytest.fixture(autouse=True)
def _isolated_settings() -> Iterator[Settings]:
    """Pin ``get_settings()`` to defaults so a developer's .env never leaks in."""
    previous = settings_module._settings_instance
    settings_module._settings_instance = Settings(_env_file=None)
    try:
        yield settings_module._settings_instance
    finally:
        settings_module._settings_instance = previous
