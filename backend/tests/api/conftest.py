"""
Pytest fixtures for API tests.

The application is built around a pre-wired ``AppContext`` (in-memory
SQLite, in-memory cache, stubbed NHTSA transports) and driven through
``httpx.ASGITransport``; the scheduler is disabled.
"""

from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from safety_ratings.main import create_application


@pytest_asyncio.fixture(scope="function")
async def async_client(app_context) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an application using the test context."""
    app = create_application(context=app_context, enable_scheduler=False)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
