"""Shared pytest fixtures for Jarvis tests."""

import os
import sys

import httpx
import pytest

# Ensure jarvis is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

START = 1_767_000_000.0
UID = "user-123"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class MockHTTP:
    """Routes outbound httpx requests to a per-test handler and records them."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.handler = lambda request: httpx.Response(404, json={"error": "not mocked"})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    """In-memory JarvisDB instance."""
    from jarvis.database import JarvisDB
    instance = JarvisDB(db_path=":memory:")
    yield instance
    instance.close()


@pytest.fixture
def config(tmp_path):
    """Default config with no providers and a test encryption key."""
    from jarvis.config import load_config
    cfg = load_config(path=str(tmp_path / "missing.json"), env={})
    cfg["database"]["path"] = ":memory:"
    cfg["security"]["encryption_key"] = "test-encryption-key-0123456789abcdef"
    return cfg


@pytest.fixture
def http():
    return MockHTTP()


@pytest.fixture
def app(config, db, clock, http):
    from jarvis.receiver import create_app
    return create_app(config=config, db=db, clock=clock, http_transport=httpx.MockTransport(http))


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c


@pytest.fixture
def manager(db, clock):
    from jarvis.buffer import SessionBufferManager
    return SessionBufferManager(db=db, clock=clock)
