import pytest
from fastapi.testclient import TestClient

from app import app
from backend import MemoryBackend, get_signal_backend


@pytest.fixture
def memory_backend():
    return MemoryBackend(ttl_seconds=3600)


@pytest.fixture
def client(memory_backend):
    app.dependency_overrides[get_signal_backend] = lambda: memory_backend
    yield TestClient(app)
    app.dependency_overrides.clear()
