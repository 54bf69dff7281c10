"""
Queue abstraction for migration retry jobs.

Supports an in-memory fallback for tests/local runs and a Redis-backed
implementation for production.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions


@dataclass
class MigrationRetryJob:
    user_id: str
    email: str
    attempt: int = 1

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "MigrationRetryJob":
        data = json.loads(raw)
        return cls(
            user_id=data["user_id"],
            email=data["email"],
            attempt=int(data.get("attempt", 1)),
        )


class JobQueue(Protocol):
    """Minimal queue interface for dispatching retry jobs to workers."""

    def enqueue(self, job: MigrationRetryJob) -> None:
        ...

    def dequeue(
        self, *, block: bool = True, timeout: int | None = None
    ) -> Optional[MigrationRetryJob]:
        ...


@dataclass
class InMemoryJobQueue:
    """Simple FIFO queue for testing/dev."""

    items: list[str] = field(default_factory=list)

    def enqueue(self, job: MigrationRetryJob) -> None:
        self.items.append(job.to_json())

    def dequeue(
        self, *, block: bool = True, timeout: int | None = None
    ) -> Optional[MigrationRetryJob]:
        if not self.items:
            return None
        return MigrationRetryJob.from_json(self.items.pop(0))


@dataclass
class RedisJobQueue:
    """Redis-backed queue using list push/pop operations."""

    url: str
    queue_key: str = "lastwishes:migration-retries"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def enqueue(self, job: MigrationRetryJob) -> None:
        self.client.rpush(self.queue_key, job.to_json())

    def dequeue(
        self, *, block: bool = True, timeout: int | None = None
    ) -> Optional[MigrationRetryJob]:
        try:
            if block:
                result = self.client.blpop(self.queue_key, timeout=timeout or 0)
                if result is None:
                    return None
                _, raw = result
            else:
                raw = self.client.lpop(self.queue_key)
                if raw is None:
                    return None
            return MigrationRetryJob.from_json(raw.decode("utf-8"))
        except redis_exceptions.ConnectionError:
            # Reconnect and report an empty queue; the worker loop polls again.
            self.client = redis.Redis.from_url(self.url)
            return None
