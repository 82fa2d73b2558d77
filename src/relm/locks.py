# locks.py
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import redis


def release_lock_key(name: str) -> str:
    return f"relm:release_lock:{name}"


class ReleaseLocks:
    """
    One mutex per release name, in-process.

    A second caller for the same name blocks until the first finishes (it
    queues, it is not rejected). Distinct names never contend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        lock = self._lock_for(name)
        with lock:
            yield

    def is_held(self, name: str) -> bool:
        return self._lock_for(name).locked()


class RedisReleaseLocks(ReleaseLocks):
    """
    The same discipline across processes (several runners deploying the same
    release), on top of redis locks.

    `ttl` bounds how long a crashed holder can keep a release blocked; it must
    exceed the longest expected apply. The local mutex is still taken first so
    threads of one process queue without polling redis.
    """

    def __init__(self, client, *, ttl: float = 3600.0, poll: float = 0.5):
        super().__init__()
        self.client = client
        self.ttl = ttl
        self.poll = poll

    @classmethod
    def from_url(cls, url: str, **kwargs) -> RedisReleaseLocks:
        return cls(redis.Redis.from_url(url), **kwargs)

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        with super().hold(name):
            lock = self.client.lock(
                release_lock_key(name),
                timeout=self.ttl,
                sleep=self.poll,
                blocking=True,
                blocking_timeout=None,
            )
            lock.acquire()
            try:
                yield
            finally:
                lock.release()


def make_locks(redis_url: Optional[str] = None) -> ReleaseLocks:
    if redis_url:
        return RedisReleaseLocks.from_url(redis_url)
    return ReleaseLocks()
