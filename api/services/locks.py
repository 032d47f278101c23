# SPDX-License-Identifier: Apache-2.0

"""
Per-slot mutual exclusion for ledger writers.

A slot is a (beneficiary, benefit type) pair. Holding a slot lock serialises
the read-decide-append sequence of registrations for that pair while leaving
every other pair free to proceed.
"""

import os
import time
import uuid
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from opentelemetry import trace
from upstash_redis import Redis

from domain.errors import ConcurrencyConflictError

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)


def _split_key(key: str):
    beneficiary_id, _, benefit_type = key.rpartition(":")
    return beneficiary_id, benefit_type


class _SlotEntry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class SlotLockManager:
    """
    In-process lock registry keyed by slot.

    Entries are reference counted and discarded once no thread holds or
    waits for them, so the registry does not grow with the beneficiary base.
    """

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._guard = threading.Lock()
        self._entries: Dict[str, _SlotEntry] = {}

    def _checkout(self, key: str) -> _SlotEntry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _SlotEntry()
                self._entries[key] = entry
            entry.holders += 1
            return entry

    def _checkin(self, key: str, entry: _SlotEntry) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0:
                self._entries.pop(key, None)

    @contextmanager
    def hold(self, key: str, timeout_seconds: Optional[float] = None) -> Iterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            ConcurrencyConflictError: if the lock is not acquired in time
        """
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=timeout):
                logger.warning(
                    "Slot lock acquisition timed out",
                    extra={"slot": key, "timeout_seconds": timeout}
                )
                raise ConcurrencyConflictError(*_split_key(key), message=f"Timed out waiting for slot {key}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def active_slots(self) -> int:
        """Number of slots currently held or awaited."""
        with self._guard:
            return len(self._entries)


class RedisSlotLockManager:
    """
    Distributed slot lock on Redis, for deployments with several processes.

    Acquisition is ``SET key token NX PX ttl`` polled until the timeout;
    release deletes the key only if it still holds this holder's token.
    """

    RELEASE_SCRIPT = (
        "if redis.call('get', KEYS[1]) == ARGV[1] then "
        "return redis.call('del', KEYS[1]) "
        "else return 0 end"
    )

    def __init__(
        self,
        client,
        ttl_ms: int = 10000,
        timeout_seconds: float = 5.0,
        poll_interval: float = 0.02,
        key_prefix: str = "ledger:slot-lock:"
    ):
        self.client = client
        self.ttl_ms = ttl_ms
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self.key_prefix = key_prefix

    def _try_acquire(self, redis_key: str, token: str) -> bool:
        result = self.client.set(redis_key, token, px=self.ttl_ms, nx=True)
        return result is True or result == "OK"

    @contextmanager
    def hold(self, key: str, timeout_seconds: Optional[float] = None) -> Iterator[None]:
        """
        Hold the distributed lock for ``key``.

        Raises:
            ConcurrencyConflictError: if the lock is not acquired in time
        """
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        redis_key = f"{self.key_prefix}{key}"
        token = uuid.uuid4().hex
        deadline = time.monotonic() + timeout

        with tracer.start_as_current_span("redis.slot_lock.acquire") as span:
            span.set_attributes({
                "redis.operation": "slot_lock",
                "redis.key": redis_key,
                "redis.ttl": self.ttl_ms
            })
            while not self._try_acquire(redis_key, token):
                if time.monotonic() >= deadline:
                    span.set_attribute("redis.result", "timeout")
                    logger.warning(
                        "Redis slot lock acquisition timed out",
                        extra={"slot": key, "timeout_seconds": timeout}
                    )
                    raise ConcurrencyConflictError(
                        *_split_key(key), message=f"Timed out waiting for slot {key}"
                    )
                time.sleep(self.poll_interval)
            span.set_attribute("redis.result", "acquired")

        try:
            yield
        finally:
            released = self.client.eval(self.RELEASE_SCRIPT, keys=[redis_key], args=[token])
            if not released:
                # TTL expired while held; another holder may have taken the slot
                logger.warning("Redis slot lock expired before release", extra={"slot": key})


def redis_client_from_env() -> Redis:
    """
    Upstash client for the lock backend, from ``REDIS_URL``/``REDIS_TOKEN``.

    Raises:
        RuntimeError: Redis is not configured or does not answer
    """
    url = os.getenv('REDIS_URL')
    token = os.getenv('REDIS_TOKEN')
    if not url:
        raise RuntimeError("LOCK_BACKEND=redis but REDIS_URL is not set")

    client = Redis(url=url, token=token) if token else Redis.from_env()
    if client.ping() != "PONG":
        raise RuntimeError(f"Redis at {url} did not answer PING")
    return client


def create_lock_manager(redis_client=None):
    """
    Build the lock manager selected by ``LOCK_BACKEND``.

    ``redis`` uses the given client or one built from the environment;
    anything else uses the in-process manager.
    """
    backend = os.getenv('LOCK_BACKEND', 'memory').lower()
    timeout = float(os.getenv('LOCK_TIMEOUT_SECONDS', '5.0'))

    if backend == 'redis':
        logger.info("Using Redis slot locks")
        return RedisSlotLockManager(
            redis_client or redis_client_from_env(),
            ttl_ms=int(os.getenv('LOCK_TTL_MS', '10000')),
            timeout_seconds=timeout
        )

    logger.info("Using in-process slot locks")
    return SlotLockManager(timeout_seconds=timeout)
