"""Shared pytest fixtures."""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest

from querylink import HttpClient, ManualScheduler, QueryClient

BASE_URL = "https://api.test.dev"


@pytest.fixture
def scheduler() -> ManualScheduler:
    """Create a fresh ManualScheduler for each test."""
    return ManualScheduler()


@pytest.fixture
def client(scheduler: ManualScheduler) -> QueryClient:
    """Create a QueryClient driven by the manual scheduler."""
    return QueryClient(scheduler=scheduler)


@pytest.fixture
async def http() -> AsyncIterator[HttpClient]:
    """Create an HttpClient pointed at the mocked test API."""
    async with HttpClient(base_url=BASE_URL) as client:
        yield client


@pytest.fixture
def wait_until() -> Callable[[Callable[[], bool]], Awaitable[None]]:
    """Yield to the event loop until a condition holds."""

    async def wait(condition: Callable[[], bool], ticks: int = 100) -> None:
        for _ in range(ticks):
            if condition():
                return
            await asyncio.sleep(0)
        raise AssertionError("condition not reached")

    return wait
