"""Unit tests for the in-memory signal store."""
import threading

import pytest

from backend import MemoryBackend, now_ms


@pytest.fixture
def backend():
    return MemoryBackend(ttl_seconds=60)


def test_rooms_are_created_lazily(backend):
    assert not backend.room_exists("r1")
    assert backend.get_offer("r1") is None
    assert backend.drain_candidates("r1", "host") is None
    assert len(backend) == 0

    backend.set_answer("r1", "answer")
    assert backend.room_exists("r1")
    assert backend.get_offer("r1") is None


def test_signal_keeps_payload_and_timestamp_together(backend):
    first = backend.set_offer("r1", "one")
    second = backend.set_offer("r1", "two")
    stored = backend.get_offer("r1")
    assert stored == second
    assert stored.timestamp >= first.timestamp


def test_drain_reads_other_role_queue(backend):
    backend.push_candidate("r1", "host", "h1")
    backend.push_candidate("r1", "guest", "g1")
    backend.push_candidate("r1", "guest", "g2")

    assert backend.drain_candidates("r1", "host") == ["g1", "g2"]
    assert backend.drain_candidates("r1", "host") == []
    assert backend.drain_candidates("r1", "guest") == ["h1"]


def test_delete_room(backend):
    backend.set_offer("r1", "offer")
    assert backend.delete_room("r1") is True
    assert backend.delete_room("r1") is False
    assert backend.get_offer("r1") is None


def test_role_last_seen(backend):
    backend.set_offer("r1", "offer")
    status = backend.get_room_status("r1")
    assert status["host_last_seen"] is not None
    assert status["guest_last_seen"] is None

    backend.drain_candidates("r1", "guest")
    assert backend.get_room_status("r1")["guest_last_seen"] is not None


def test_sweep_removes_only_idle_rooms(backend):
    backend.set_offer("idle", "offer")
    backend.set_offer("busy", "offer")
    later = now_ms() + 61 * 1000

    # keep "busy" alive right up to the sweep
    with backend._room("busy") as room:
        room.touch(later)

    assert backend.sweep_expired(now=later) == 1
    assert not backend.room_exists("idle")
    assert backend.room_exists("busy")


def test_sweep_disabled_without_ttl():
    backend = MemoryBackend(ttl_seconds=0)
    backend.set_offer("r1", "offer")
    assert backend.sweep_expired(now=now_ms() + 10 ** 9) == 0
    assert backend.room_exists("r1")
    assert backend.get_room_status("r1")["expires_at"] is None


def test_expired_room_is_recreated_on_write(backend):
    backend.set_offer("r1", "stale")
    with backend._room("r1") as room:
        room.touch(now_ms() - 120 * 1000)

    assert backend.get_offer("r1") is None
    backend.push_candidate("r1", "host", "h1")
    assert backend.get_offer("r1") is None
    assert backend.drain_candidates("r1", "guest") == ["h1"]


def test_concurrent_push_and_drain_loses_nothing(backend):
    per_thread = 200
    senders = 4
    received = []
    done = threading.Event()

    def send(n):
        for i in range(per_thread):
            backend.push_candidate("r1", "guest", f"{n}-{i}")

    def receive():
        while not done.is_set():
            received.extend(backend.drain_candidates("r1", "host") or [])

    backend.set_offer("r1", "offer")
    receiver = threading.Thread(target=receive)
    receiver.start()
    threads = [threading.Thread(target=send, args=(n,)) for n in range(senders)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    done.set()
    receiver.join()
    received.extend(backend.drain_candidates("r1", "host"))

    assert len(received) == per_thread * senders
    assert len(set(received)) == len(received)
    # FIFO per sender
    for n in range(senders):
        mine = [c for c in received if c.startswith(f"{n}-")]
        assert mine == [f"{n}-{i}" for i in range(per_thread)]


def test_concurrent_delete_and_push(backend):
    # a push racing a host end either lands in the old room (and is deleted
    # with it) or lazily creates a fresh one; it never vanishes silently
    for attempt in range(50):
        room_id = f"r{attempt}"
        backend.set_offer(room_id, "offer")
        t1 = threading.Thread(target=backend.delete_room, args=(room_id,))
        t2 = threading.Thread(target=backend.push_candidate, args=(room_id, "host", "late"))
        t1.start()
        t2.start()
        t1.join()
        t2.join()
        if backend.room_exists(room_id):
            assert backend.get_offer(room_id) is None
            assert backend.drain_candidates(room_id, "guest") == ["late"]
