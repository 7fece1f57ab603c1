"""
Pytest configuration and fixtures for treestream tests.

The generation service is simulated two ways: httpx.MockTransport serving
scripted chunk sequences, and the replay app mounted through ASGITransport.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import httpx
import pytest

from treestream.main import app

STREAM_URL = "http://test/api/generate"
ENSEMBLE_URL = "http://test/api/ensemble"


async def _scripted_body(script: list) -> AsyncIterator[bytes]:
    """
    Yield each str/bytes item as a chunk. An asyncio.Event item pauses the
    body until it's set; an exception item is raised mid-stream.
    """
    for item in script:
        if isinstance(item, asyncio.Event):
            await item.wait()
        elif isinstance(item, BaseException):
            raise item
        else:
            yield item.encode("utf-8") if isinstance(item, str) else item


@pytest.fixture
def requests_seen() -> list[httpx.Request]:
    return []


@pytest.fixture
def scripted_client(requests_seen):
    """Factory: an AsyncClient whose every request streams back the given script."""

    def make(script: list, status_code: int = 200) -> httpx.AsyncClient:
        async def handler(request: httpx.Request) -> httpx.Response:
            requests_seen.append(request)
            return httpx.Response(status_code, content=_scripted_body(script))

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return make


@pytest.fixture
def failing_client():
    """An AsyncClient whose connection attempts always fail."""

    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def replay_client() -> httpx.AsyncClient:
    """An AsyncClient talking to the replay app in-process."""
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
