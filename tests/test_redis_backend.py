"""Tests for the Redis signal store, run against fakeredis."""
import fakeredis
import pytest
from fastapi.testclient import TestClient

from app import app
from backend import RedisBackend, get_signal_backend
from constants import SIGNALING_PREFIX
from redis_keys import REDIS_SIGNAL_KEY, REDIS_CANDIDATES_KEY


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def backend(redis_client):
    return RedisBackend(redis_client, ttl_seconds=60)


def test_offer_and_answer(backend):
    assert backend.get_offer("r1") is None
    signal = backend.set_offer("r1", "offer")
    assert backend.get_offer("r1") == signal
    assert backend.get_answer("r1") is None

    backend.set_answer("r1", "answer")
    backend.set_answer("r1", "answer 2")
    assert backend.get_answer("r1").sdp == "answer 2"


def test_candidates_keep_json_shape_and_order(backend):
    first = {"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0}
    backend.push_candidate("r1", "host", first)
    backend.push_candidate("r1", "host", "candidate:2")

    assert backend.drain_candidates("r1", "host") == []
    assert backend.drain_candidates("r1", "guest") == [first, "candidate:2"]
    assert backend.drain_candidates("r1", "guest") == []


def test_drain_missing_room(backend):
    assert backend.drain_candidates("nowhere", "host") is None


def test_delete_room_removes_all_keys(backend, redis_client):
    backend.set_offer("r1", "offer")
    backend.push_candidate("r1", "guest", "g1")
    assert backend.delete_room("r1") is True
    assert backend.delete_room("r1") is False
    assert not redis_client.exists(REDIS_SIGNAL_KEY.format(slug="r1"))
    assert not redis_client.exists(REDIS_CANDIDATES_KEY.format(role="guest", slug="r1"))
    assert not backend.room_exists("r1")


def test_keys_carry_ttl(backend, redis_client):
    backend.push_candidate("r1", "guest", "g1")
    assert 0 < redis_client.ttl(REDIS_SIGNAL_KEY.format(slug="r1")) <= 60
    assert 0 < redis_client.ttl(REDIS_CANDIDATES_KEY.format(role="guest", slug="r1")) <= 60
    assert backend.sweep_expired() == 0


def test_room_status(backend):
    assert backend.get_room_status("r1") is None
    backend.set_offer("r1", "offer")
    backend.push_candidate("r1", "host", "h1")
    status = backend.get_room_status("r1")
    assert status["has_offer"] is True
    assert status["has_answer"] is False
    assert status["pending_host_candidates"] == 1
    assert status["pending_guest_candidates"] == 0
    assert status["created_at"] <= status["last_activity"]
    assert status["guest_last_seen"] is None
    assert status["expires_at"] is not None


def test_api_with_redis_backend(backend):
    app.dependency_overrides[get_signal_backend] = lambda: backend
    try:
        client = TestClient(app)
        client.post(f"{SIGNALING_PREFIX}/r1/offer", json={"sdp": "offer"})
        client.post(f"{SIGNALING_PREFIX}/r1/candidates", json={"candidate": "g1", "from": "guest"})
        assert client.get(f"{SIGNALING_PREFIX}/r1/candidates", params={"role": "host"}).json() == {"candidates": ["g1"]}
        assert client.post(f"{SIGNALING_PREFIX}/r1/end", json={"role": "host"}).json()["message"] == "Room cleaned up"
        assert client.get(f"{SIGNALING_PREFIX}/r1/offer").status_code == 404
        assert client.get("/health").json()["backend"] == "redis"
    finally:
        app.dependency_overrides.clear()
