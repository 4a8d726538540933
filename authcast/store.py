"""
Shared registry store adapters.

The registry keeps two indices in the store:
- forward: topic -> set of connection ids
- reverse: socket:<connection id> -> hash of topic -> reference count

Every primitive here is atomic against the store. The compound primitives
(add_reference, release_reference, purge_connection) keep both indices in
step so concurrent subscribe, unsubscribe and purge calls can never leave a
member without a positive count, or a positive count without membership.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import StoreError
from .keys import topic_key

# KEYS[1] = reverse hash, KEYS[2] = forward set
# ARGV[1] = topic (hash field), ARGV[2] = connection id (set member)
_RELEASE_SCRIPT = """
local count = redis.call('HINCRBY', KEYS[1], ARGV[1], -1)
if count <= 0 then
    redis.call('HDEL', KEYS[1], ARGV[1])
    redis.call('SREM', KEYS[2], ARGV[2])
    return 0
end
return count
"""


class RegistryStore(Protocol):
    async def members(self, set_key: str) -> set[str]: ...

    async def fields(self, hash_key: str) -> list[str]: ...

    async def count(self, hash_key: str, field: str) -> int: ...

    async def add_reference(
        self, set_key: str, hash_key: str, member: str, field: str
    ) -> int: ...

    async def release_reference(
        self, set_key: str, hash_key: str, member: str, field: str
    ) -> int: ...

    async def remove_member(self, set_key: str, member: str) -> None: ...

    async def purge_connection(self, hash_key: str, member: str) -> list[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StoreError(f"{operation} failed: {exc}") from exc


def connect_redis(url: str) -> redis.Redis:
    """Create a Redis client for the given URL."""
    return redis.from_url(url, decode_responses=True)


class RedisRegistryStore:
    """Registry store backed by Redis sets and hashes."""

    def __init__(self, client: redis.Redis):
        self._client = client
        self._release = client.register_script(_RELEASE_SCRIPT)

    async def members(self, set_key: str) -> set[str]:
        with _store_errors("smembers"):
            return set(await self._client.smembers(set_key))

    async def fields(self, hash_key: str) -> list[str]:
        with _store_errors("hkeys"):
            return list(await self._client.hkeys(hash_key))

    async def count(self, hash_key: str, field: str) -> int:
        with _store_errors("hget"):
            value = await self._client.hget(hash_key, field)
        return int(value) if value else 0

    async def add_reference(
        self, set_key: str, hash_key: str, member: str, field: str
    ) -> int:
        with _store_errors("add_reference"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.sadd(set_key, member)
                pipe.hincrby(hash_key, field, 1)
                _, count = await pipe.execute()
        return int(count)

    async def release_reference(
        self, set_key: str, hash_key: str, member: str, field: str
    ) -> int:
        with _store_errors("release_reference"):
            count = await self._release(keys=[hash_key, set_key], args=[field, member])
        return int(count)

    async def remove_member(self, set_key: str, member: str) -> None:
        with _store_errors("srem"):
            await self._client.srem(set_key, member)

    async def purge_connection(self, hash_key: str, member: str) -> list[str]:
        """
        Drop the member from every topic listed in its hash, then the hash.

        The hash is WATCHed, so a subscribe that lands between reading the
        fields and EXEC aborts the transaction and the read is retried.
        """

        async def purge(pipe) -> list[str]:
            topics = list(await pipe.hkeys(hash_key))
            pipe.multi()
            for topic in topics:
                pipe.srem(topic_key(topic), member)
            pipe.delete(hash_key)
            return topics

        with _store_errors("purge"):
            return await self._client.transaction(purge, hash_key, value_from_callable=True)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()


class MemoryRegistryStore:
    """
    In-process registry store for development and tests.

    Each primitive yields to the event loop once before acting, so concurrent
    callers interleave between store calls the way they would against Redis.
    The primitive itself runs without a suspension point and is atomic.
    """

    def __init__(self) -> None:
        self._sets: dict[str, set[str]] = {}
        self._hashes: dict[str, dict[str, int]] = {}

    async def members(self, set_key: str) -> set[str]:
        await asyncio.sleep(0)
        return set(self._sets.get(set_key, ()))

    async def fields(self, hash_key: str) -> list[str]:
        await asyncio.sleep(0)
        return list(self._hashes.get(hash_key, {}))

    async def count(self, hash_key: str, field: str) -> int:
        await asyncio.sleep(0)
        return self._hashes.get(hash_key, {}).get(field, 0)

    async def add_reference(
        self, set_key: str, hash_key: str, member: str, field: str
    ) -> int:
        await asyncio.sleep(0)
        self._sets.setdefault(set_key, set()).add(member)
        counts = self._hashes.setdefault(hash_key, {})
        counts[field] = counts.get(field, 0) + 1
        return counts[field]

    async def release_reference(
        self, set_key: str, hash_key: str, member: str, field: str
    ) -> int:
        await asyncio.sleep(0)
        counts = self._hashes.setdefault(hash_key, {})
        count = counts.get(field, 0) - 1
        if count > 0:
            counts[field] = count
            return count

        counts.pop(field, None)
        if not counts:
            self._hashes.pop(hash_key, None)
        self._discard(set_key, member)
        return 0

    async def remove_member(self, set_key: str, member: str) -> None:
        await asyncio.sleep(0)
        self._discard(set_key, member)

    async def purge_connection(self, hash_key: str, member: str) -> list[str]:
        await asyncio.sleep(0)
        topics = list(self._hashes.pop(hash_key, {}))
        for topic in topics:
            self._discard(topic_key(topic), member)
        return topics

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass

    def _discard(self, set_key: str, member: str) -> None:
        members = self._sets.get(set_key)
        if members is None:
            return
        members.discard(member)
        if not members:
            self._sets.pop(set_key, None)
