"""Shared test fixtures and configuration for backend tests."""
import time
from typing import Any, Callable, List

import pytest
from fastapi.testclient import TestClient

from quorum.config import AppSettings
from quorum.main import create_app
from quorum.store import InMemoryMessageStore


class FakeTransport:
    """Stands in for a WebSocket: records every frame sent to it."""

    def __init__(self, fail_with: Exception = None) -> None:
        self.sent: List[Any] = []
        self.fail_with = fail_with

    async def send_json(self, data: Any) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(data)


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll until ``predicate()`` is true; server-side cleanup runs on another thread."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def settings():
    return AppSettings()


@pytest.fixture
def store():
    return InMemoryMessageStore()


@pytest.fixture
def app(settings, store):
    """A fresh app with its own registry and store per test."""
    return create_app(config=settings, store=store)


@pytest.fixture
def api_client(app):
    """Provide a TestClient for the app, entered as a context manager.

    Inside the ``with`` block HTTP requests and WebSocket sessions share one
    event loop, which the outbound channels rely on.
    """
    with TestClient(app) as client:
        yield client
