import json
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import redis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, ROOM_TTL_SECONDS, SIGNAL_BACKEND
from redis_keys import REDIS_SIGNAL_KEY, REDIS_CANDIDATES_KEY
from logging_config import get_logger

logger = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def other_role(role: str) -> str:
    return "guest" if role == "host" else "host"


@dataclass
class Signal:
    sdp: str
    timestamp: int


class SignalBackend(ABC):
    """Storage for rooms and their signaling state.

    Candidate queues are mailboxes: a role pushes into its OWN queue and
    drains the OTHER role's queue. Candidates gathered by the host are meant
    for the guest's connectivity agent and vice versa, so a drain by role X
    must never read the queue that X itself writes.
    """

    name = "abstract"
    # Backends whose storage expires keys on its own need no sweep task
    expires_natively = False

    @abstractmethod
    def set_offer(self, room_id: str, sdp: str) -> Signal:
        """Store the host's offer, creating the room if needed."""

    @abstractmethod
    def get_offer(self, room_id: str) -> Optional[Signal]:
        ...

    @abstractmethod
    def set_answer(self, room_id: str, sdp: str) -> Signal:
        """Store the guest's answer, creating the room if needed."""

    @abstractmethod
    def get_answer(self, room_id: str) -> Optional[Signal]:
        ...

    @abstractmethod
    def push_candidate(self, room_id: str, role: str, candidate: Any) -> None:
        """Append a candidate to the sender's own queue, creating the room if needed."""

    @abstractmethod
    def drain_candidates(self, room_id: str, role: str) -> Optional[List[Any]]:
        """Remove and return every candidate queued by the other role, oldest first.

        Returns None when the room does not exist. Read and clear happen as one
        step: a candidate pushed concurrently is either in the returned list or
        still queued afterwards, never lost.
        """

    @abstractmethod
    def delete_room(self, room_id: str) -> bool:
        """Delete a room and everything in it. Returns False if it did not exist."""

    @abstractmethod
    def room_exists(self, room_id: str) -> bool:
        ...

    @abstractmethod
    def get_room_status(self, room_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def sweep_expired(self, now: Optional[int] = None) -> int:
        """Remove rooms idle for longer than the TTL. Returns how many were removed."""


@dataclass
class RoomState:
    created_at: int
    last_activity: int
    offer: Optional[Signal] = None
    answer: Optional[Signal] = None
    host_candidates: List[Any] = field(default_factory=list)
    guest_candidates: List[Any] = field(default_factory=list)
    host_last_seen: Optional[int] = None
    guest_last_seen: Optional[int] = None
    deleted: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def queue(self, role: str) -> List[Any]:
        return self.host_candidates if role == "host" else self.guest_candidates

    def touch(self, now: int, role: Optional[str] = None):
        self.last_activity = now
        if role == "host":
            self.host_last_seen = now
        elif role == "guest":
            self.guest_last_seen = now


class MemoryBackend(SignalBackend):
    """Room table held in process memory.

    Locking: the table lock guards the dict itself and is never held while
    waiting on a room lock. Every read or mutation of a room happens with that
    room's lock held. A room removed from the table is flagged `deleted` under
    its lock, so a request that was waiting on it starts over instead of
    writing into a room nobody can see anymore.
    """

    name = "memory"

    def __init__(self, ttl_seconds: int = ROOM_TTL_SECONDS):
        self.ttl_ms = ttl_seconds * 1000
        self._rooms: Dict[str, RoomState] = {}
        self._table_lock = threading.Lock()
        logger.info(f"Initializing MemoryBackend with room TTL {ttl_seconds} seconds")

    def _is_expired(self, room: RoomState, now: int) -> bool:
        return bool(self.ttl_ms) and now - room.last_activity > self.ttl_ms

    def _remove(self, room_id: str, room: RoomState):
        # caller holds room.lock
        room.deleted = True
        with self._table_lock:
            if self._rooms.get(room_id) is room:
                del self._rooms[room_id]

    @contextmanager
    def _room(self, room_id: str, create: bool = False) -> Iterator[Optional[RoomState]]:
        while True:
            with self._table_lock:
                room = self._rooms.get(room_id)
                if room is None and create:
                    now = now_ms()
                    room = RoomState(created_at=now, last_activity=now)
                    self._rooms[room_id] = room
                    logger.info(f"Room {room_id} created")
            if room is None:
                yield None
                return
            with room.lock:
                if room.deleted:
                    continue
                if self._is_expired(room, now_ms()):
                    logger.info(f"Room {room_id} expired before sweep, removing")
                    self._remove(room_id, room)
                    if create:
                        continue
                    yield None
                    return
                yield room
                return

    def _set_signal(self, room_id: str, attr: str, role: str, sdp: str) -> Signal:
        with self._room(room_id, create=True) as room:
            now = now_ms()
            signal = Signal(sdp=sdp, timestamp=now)
            # one attribute assignment, so payload and timestamp never mix across writes
            setattr(room, attr, signal)
            room.touch(now, role)
            return signal

    def _get_signal(self, room_id: str, attr: str) -> Optional[Signal]:
        with self._room(room_id) as room:
            if room is None:
                return None
            room.touch(now_ms())
            return getattr(room, attr)

    def set_offer(self, room_id: str, sdp: str) -> Signal:
        return self._set_signal(room_id, "offer", "host", sdp)

    def get_offer(self, room_id: str) -> Optional[Signal]:
        return self._get_signal(room_id, "offer")

    def set_answer(self, room_id: str, sdp: str) -> Signal:
        return self._set_signal(room_id, "answer", "guest", sdp)

    def get_answer(self, room_id: str) -> Optional[Signal]:
        return self._get_signal(room_id, "answer")

    def push_candidate(self, room_id: str, role: str, candidate: Any) -> None:
        with self._room(room_id, create=True) as room:
            room.queue(role).append(candidate)
            room.touch(now_ms(), role)
            logger.debug(f"Queued {role} candidate in room {room_id} ({len(room.queue(role))} pending)")

    def drain_candidates(self, room_id: str, role: str) -> Optional[List[Any]]:
        with self._room(room_id) as room:
            if room is None:
                return None
            queue = room.queue(other_role(role))
            candidates = list(queue)
            queue.clear()
            room.touch(now_ms(), role)
            logger.debug(f"Drained {len(candidates)} {other_role(role)} candidates for {role} in room {room_id}")
            return candidates

    def delete_room(self, room_id: str) -> bool:
        with self._room(room_id) as room:
            if room is None:
                return False
            self._remove(room_id, room)
            return True

    def room_exists(self, room_id: str) -> bool:
        with self._room(room_id) as room:
            return room is not None

    def get_room_status(self, room_id: str) -> Optional[dict]:
        with self._room(room_id) as room:
            if room is None:
                return None
            return {
                "room_id": room_id,
                "created_at": room.created_at,
                "last_activity": room.last_activity,
                "expires_at": room.last_activity + self.ttl_ms if self.ttl_ms else None,
                "has_offer": room.offer is not None,
                "has_answer": room.answer is not None,
                "pending_host_candidates": len(room.host_candidates),
                "pending_guest_candidates": len(room.guest_candidates),
                "host_last_seen": room.host_last_seen,
                "guest_last_seen": room.guest_last_seen,
            }

    def sweep_expired(self, now: Optional[int] = None) -> int:
        if not self.ttl_ms:
            return 0
        now = now if now is not None else now_ms()
        with self._table_lock:
            snapshot = list(self._rooms.items())
        removed = 0
        for room_id, room in snapshot:
            with room.lock:
                if room.deleted or not self._is_expired(room, now):
                    continue
                idle_seconds = (now - room.last_activity) // 1000
                self._remove(room_id, room)
            removed += 1
            logger.info(f"Room {room_id} expired after {idle_seconds}s idle")
        return removed

    def __len__(self):
        with self._table_lock:
            return len(self._rooms)


class RedisBackend(SignalBackend):
    """Room table in Redis, shareable by several relay processes.

    Expiry is left to Redis: every key of a room gets EXPIRE refreshed on
    activity, so there is nothing to sweep.
    """

    name = "redis"
    expires_natively = True

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = ROOM_TTL_SECONDS):
        self.redis_client = redis_client
        self.ttl = ttl_seconds
        logger.info(f"Initializing RedisBackend with room TTL {ttl_seconds} seconds")

    def _signal_key(self, room_id: str) -> str:
        return REDIS_SIGNAL_KEY.format(slug=room_id)

    def _queue_key(self, room_id: str, role: str) -> str:
        return REDIS_CANDIDATES_KEY.format(role=role, slug=room_id)

    def _room_keys(self, room_id: str) -> List[str]:
        return [self._signal_key(room_id), self._queue_key(room_id, "host"), self._queue_key(room_id, "guest")]

    def _expire(self, pipe, room_id: str):
        if not self.ttl:
            return
        for key in self._room_keys(room_id):
            pipe.expire(key, self.ttl)

    def _write(self, room_id: str, role: str, fields: dict, now: int, pipe=None):
        key = self._signal_key(room_id)
        execute = pipe is None
        if pipe is None:
            pipe = self.redis_client.pipeline(transaction=True)
        pipe.hsetnx(key, "created_at", now)
        pipe.hset(key, mapping={**fields, "last_activity": now, f"{role}_last_seen": now})
        self._expire(pipe, room_id)
        if execute:
            pipe.execute()

    def _set_signal(self, room_id: str, prefix: str, role: str, sdp: str) -> Signal:
        now = now_ms()
        # single HSET: payload and timestamp land together
        self._write(room_id, role, {f"{prefix}_sdp": sdp, f"{prefix}_ts": now}, now)
        logger.debug(f"Stored {prefix} for room {room_id}")
        return Signal(sdp=sdp, timestamp=now)

    def _get_signal(self, room_id: str, prefix: str) -> Optional[Signal]:
        key = self._signal_key(room_id)

        def read(pipe):
            if not pipe.exists(key):
                return None
            sdp, ts = pipe.hmget(key, f"{prefix}_sdp", f"{prefix}_ts")
            pipe.multi()
            pipe.hset(key, "last_activity", now_ms())
            self._expire(pipe, room_id)
            if sdp is None:
                return None
            return Signal(sdp=sdp, timestamp=int(ts))

        return self.redis_client.transaction(read, key, value_from_callable=True)

    def set_offer(self, room_id: str, sdp: str) -> Signal:
        return self._set_signal(room_id, "offer", "host", sdp)

    def get_offer(self, room_id: str) -> Optional[Signal]:
        return self._get_signal(room_id, "offer")

    def set_answer(self, room_id: str, sdp: str) -> Signal:
        return self._set_signal(room_id, "answer", "guest", sdp)

    def get_answer(self, room_id: str) -> Optional[Signal]:
        return self._get_signal(room_id, "answer")

    def push_candidate(self, room_id: str, role: str, candidate: Any) -> None:
        now = now_ms()
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.rpush(self._queue_key(room_id, role), json.dumps(candidate))
        self._write(room_id, role, {}, now, pipe=pipe)
        pipe.execute()
        logger.debug(f"Queued {role} candidate in room {room_id}")

    def drain_candidates(self, room_id: str, role: str) -> Optional[List[Any]]:
        key = self._signal_key(room_id)
        queue_key = self._queue_key(room_id, other_role(role))

        def drain(pipe):
            if not pipe.exists(key):
                return None
            raw = pipe.lrange(queue_key, 0, -1)
            pipe.multi()
            pipe.delete(queue_key)
            now = now_ms()
            pipe.hset(key, mapping={"last_activity": now, f"{role}_last_seen": now})
            self._expire(pipe, room_id)
            return raw

        # WATCH on the queue: a push between LRANGE and DEL aborts and retries the drain
        raw = self.redis_client.transaction(drain, key, queue_key, value_from_callable=True)
        if raw is None:
            return None
        candidates = []
        for item in raw:
            try:
                candidates.append(json.loads(item))
            except (json.JSONDecodeError, TypeError):
                candidates.append(item)
        logger.debug(f"Drained {len(candidates)} {other_role(role)} candidates for {role} in room {room_id}")
        return candidates

    def delete_room(self, room_id: str) -> bool:
        logger.info(f"Deleting room {room_id}")
        signal_key, host_key, guest_key = self._room_keys(room_id)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.delete(signal_key)
        pipe.delete(host_key, guest_key)
        deleted, queues_deleted = pipe.execute()
        logger.debug(f"Room {room_id} deleted: signal_key={deleted}, queue_keys={queues_deleted}")
        return bool(deleted)

    def room_exists(self, room_id: str) -> bool:
        return bool(self.redis_client.exists(self._signal_key(room_id)))

    def get_room_status(self, room_id: str) -> Optional[dict]:
        signal_key, host_key, guest_key = self._room_keys(room_id)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hgetall(signal_key)
        pipe.llen(host_key)
        pipe.llen(guest_key)
        pipe.pttl(signal_key)
        data, host_pending, guest_pending, pttl = pipe.execute()
        if not data:
            return None

        def as_int(value):
            return int(value) if value is not None else None

        return {
            "room_id": room_id,
            "created_at": as_int(data.get("created_at")),
            "last_activity": as_int(data.get("last_activity")),
            "expires_at": now_ms() + pttl if pttl and pttl > 0 else None,
            "has_offer": "offer_sdp" in data,
            "has_answer": "answer_sdp" in data,
            "pending_host_candidates": host_pending,
            "pending_guest_candidates": guest_pending,
            "host_last_seen": as_int(data.get("host_last_seen")),
            "guest_last_seen": as_int(data.get("guest_last_seen")),
        }

    def sweep_expired(self, now: Optional[int] = None) -> int:
        return 0


def create_backend(kind: str = SIGNAL_BACKEND) -> SignalBackend:
    if kind == "memory":
        return MemoryBackend()
    if kind != "redis":
        raise ValueError(f"Unknown signal backend: {kind!r} (expected 'memory' or 'redis')")
    try:
        redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        # Test connection
        redis_client.ping()
        logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
        raise
    return RedisBackend(redis_client)


signal_backend: Optional[SignalBackend] = None
_backend_lock = threading.Lock()


def get_signal_backend() -> SignalBackend:
    global signal_backend
    with _backend_lock:
        if signal_backend is None:
            signal_backend = create_backend()
        return signal_backend
