"""Webhook idempotency — bounded record of processed event ids.

Security contract:
- An id recorded as processed is never dispatched again (duplicates -> Ignored)
- Ids are recorded only after successful processing, never before
- A short-lived in-progress marker, separate from "processed", lets a
  duplicate that arrives mid-processing resolve immediately instead of
  waiting for (or re-entering) the dispatcher
- Retention is bounded: oldest-inserted ids are evicted first (not LRU)
- Markers carry a per-claim token; only the owning claim can remove one
- Backend errors propagate (fail-closed: the event fails and can be redelivered)

Two backends:
- InMemoryIdempotencyStore: single process, thread- and task-safe
- RedisIdempotencyStore: shared across workers (SET NX for the marker,
  sorted set ordered by insertion sequence for the bounded processed set)
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
DEFAULT_IN_PROGRESS_TTL_SECONDS = 150

_KEY_PREFIX = "webhook"

# Delete KEYS[1] only while it still holds ARGV[1] (the claim token)
_RELEASE_MARKER_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class ClaimStatus(str, Enum):
    """Outcome of an atomic claim on an event id."""

    CLAIMED = "claimed"  # caller owns the event and must mark or release it
    IN_PROGRESS = "in_progress"  # another delivery is processing it right now
    PROCESSED = "processed"  # already applied


@dataclass(frozen=True)
class ProcessedEventRecord:
    """An event id that completed successfully."""

    event_id: str
    processed_at: float


@runtime_checkable
class IdempotencyStore(Protocol):
    """Deduplication store for webhook event ids."""

    async def has_processed(self, event_id: str) -> bool:
        ...

    async def mark_processed(self, event_id: str, at: float) -> None:
        """Record *event_id* as processed and clear its in-progress marker."""
        ...

    async def claim(self, event_id: str) -> ClaimStatus:
        """Atomically check *event_id* and, if new, set its in-progress marker."""
        ...

    async def release(self, event_id: str) -> None:
        """Drop the in-progress marker after a failed attempt."""
        ...


class InMemoryIdempotencyStore:
    """Bounded in-process store.

    A single threading.Lock guards both maps. Nothing awaits while holding
    it, so it is safe from concurrent threads and from tasks on one loop.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._processed: OrderedDict[str, float] = OrderedDict()
        self._in_progress: set[str] = set()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._processed)

    async def has_processed(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._processed

    async def mark_processed(self, event_id: str, at: float) -> None:
        with self._lock:
            self._in_progress.discard(event_id)
            if event_id in self._processed:
                return
            self._processed[event_id] = at
            while len(self._processed) > self._capacity:
                evicted, _ = self._processed.popitem(last=False)
                logger.debug("Idempotency store evicted %s", evicted)

    async def claim(self, event_id: str) -> ClaimStatus:
        with self._lock:
            if event_id in self._processed:
                return ClaimStatus.PROCESSED
            if event_id in self._in_progress:
                return ClaimStatus.IN_PROGRESS
            self._in_progress.add(event_id)
            return ClaimStatus.CLAIMED

    async def release(self, event_id: str) -> None:
        with self._lock:
            self._in_progress.discard(event_id)

    def records(self) -> list[ProcessedEventRecord]:
        """Processed ids, oldest first."""
        with self._lock:
            return [
                ProcessedEventRecord(event_id=eid, processed_at=at)
                for eid, at in self._processed.items()
            ]


class RedisIdempotencyStore:
    """Redis-backed store shared by every worker.

    Key pattern:
        {prefix}:processed        ZSET id -> insertion sequence
        {prefix}:processed_at     HASH id -> processed timestamp
        {prefix}:seq              counter feeding the ZSET scores
        {prefix}:inflight:{id}    in-progress marker holding the owner's token (SET NX EX)

    The marker TTL must outlast the whole retry budget of one event, see
    build_processor(). A marker is only ever deleted by the claim that set it.
    """

    def __init__(
        self,
        client: Redis,
        capacity: int = DEFAULT_CAPACITY,
        in_progress_ttl: int = DEFAULT_IN_PROGRESS_TTL_SECONDS,
        prefix: str = _KEY_PREFIX,
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._redis = client
        self._capacity = capacity
        self._in_progress_ttl = in_progress_ttl
        self._processed_key = f"{prefix}:processed"
        self._processed_at_key = f"{prefix}:processed_at"
        self._seq_key = f"{prefix}:seq"
        self._inflight_prefix = f"{prefix}:inflight"
        # event id -> token of the marker this instance currently owns
        self._tokens: dict[str, str] = {}

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> RedisIdempotencyStore:
        import redis.asyncio as redis_lib

        return cls(redis_lib.from_url(redis_url, decode_responses=True), **kwargs)

    @property
    def in_progress_ttl(self) -> int:
        return self._in_progress_ttl

    def _inflight_key(self, event_id: str) -> str:
        return f"{self._inflight_prefix}:{event_id}"

    async def has_processed(self, event_id: str) -> bool:
        return await self._redis.zscore(self._processed_key, event_id) is not None

    async def claim(self, event_id: str) -> ClaimStatus:
        if event_id in self._tokens:
            return ClaimStatus.IN_PROGRESS
        if await self.has_processed(event_id):
            return ClaimStatus.PROCESSED

        token = uuid.uuid4().hex
        acquired = await self._redis.set(
            self._inflight_key(event_id), token, nx=True, ex=self._in_progress_ttl
        )
        if not acquired:
            # Holder may have finished between the two calls
            if await self.has_processed(event_id):
                return ClaimStatus.PROCESSED
            return ClaimStatus.IN_PROGRESS

        # Re-check: a holder can mark processed and drop its marker after our
        # first read but before our SET NX
        if await self.has_processed(event_id):
            await self._delete_if_owner(event_id, token)
            return ClaimStatus.PROCESSED

        self._tokens[event_id] = token
        return ClaimStatus.CLAIMED

    async def mark_processed(self, event_id: str, at: float) -> None:
        seq = await self._redis.incr(self._seq_key)
        # nx: re-marking an id keeps its original position in the eviction order
        added = await self._redis.zadd(self._processed_key, {event_id: seq}, nx=True)
        if added:
            await self._redis.hset(self._processed_at_key, event_id, str(at))
        await self._release_owned(event_id)
        await self._trim()

    async def release(self, event_id: str) -> None:
        await self._release_owned(event_id)

    async def _release_owned(self, event_id: str) -> None:
        token = self._tokens.get(event_id)
        if token is None:
            return
        await self._delete_if_owner(event_id, token)
        self._tokens.pop(event_id, None)

    async def _delete_if_owner(self, event_id: str, token: str) -> None:
        deleted = await self._redis.eval(
            _RELEASE_MARKER_SCRIPT, 1, self._inflight_key(event_id), token
        )
        if not deleted:
            logger.warning(
                "In-progress marker for %s expired or changed owner before release", event_id
            )

    async def _trim(self) -> None:
        overflow = await self._redis.zcard(self._processed_key) - self._capacity
        if overflow <= 0:
            return
        evicted = await self._redis.zrange(self._processed_key, 0, overflow - 1)
        if evicted:
            await self._redis.zrem(self._processed_key, *evicted)
            await self._redis.hdel(self._processed_at_key, *evicted)
            logger.debug("Idempotency store evicted %d id(s)", len(evicted))
