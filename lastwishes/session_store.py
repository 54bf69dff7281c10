"""
Portal-session scoped key/value storage.

Each portal session (one browser) gets its own small namespace, the server-side
stand-in for the browser's session storage. It holds the advisory
``migration_done_<user_id>`` markers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis


class SessionStore(Protocol):
    def get(self, portal_id: str, key: str) -> Optional[str]:
        ...

    def set(self, portal_id: str, key: str, value: str) -> None:
        ...

    def delete(self, portal_id: str, key: str) -> None:
        ...

    def keys(self, portal_id: str) -> list[str]:
        ...

    def clear(self, portal_id: str) -> None:
        ...


@dataclass
class InMemorySessionStore:
    data: dict[str, dict[str, str]] = field(default_factory=dict)

    def get(self, portal_id: str, key: str) -> Optional[str]:
        return self.data.get(portal_id, {}).get(key)

    def set(self, portal_id: str, key: str, value: str) -> None:
        self.data.setdefault(portal_id, {})[key] = value

    def delete(self, portal_id: str, key: str) -> None:
        self.data.get(portal_id, {}).pop(key, None)

    def keys(self, portal_id: str) -> list[str]:
        return list(self.data.get(portal_id, {}).keys())

    def clear(self, portal_id: str) -> None:
        self.data.pop(portal_id, None)


@dataclass
class RedisSessionStore:
    """One Redis hash per portal session, expiring with the session."""

    url: str
    prefix: str = "lastwishes:portal"
    ttl_seconds: int = 60 * 60 * 24

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url, decode_responses=True)

    def _key(self, portal_id: str) -> str:
        return f"{self.prefix}:{portal_id}"

    def get(self, portal_id: str, key: str) -> Optional[str]:
        return self.client.hget(self._key(portal_id), key)

    def set(self, portal_id: str, key: str, value: str) -> None:
        name = self._key(portal_id)
        pipe = self.client.pipeline()
        pipe.hset(name, key, value)
        pipe.expire(name, self.ttl_seconds)
        pipe.execute()

    def delete(self, portal_id: str, key: str) -> None:
        self.client.hdel(self._key(portal_id), key)

    def keys(self, portal_id: str) -> list[str]:
        return list(self.client.hkeys(self._key(portal_id)))

    def clear(self, portal_id: str) -> None:
        self.client.delete(self._key(portal_id))
