"""Tests for the reference-counted subscription registry."""

import asyncio
import itertools

import pytest

from authcast.keys import socket_key
from authcast.registry import SubscriptionRegistry

from .doubles import FlakyRegistryStore


async def assert_consistent(registry: SubscriptionRegistry, store, topic: str, connection_id: str):
    member = connection_id in await registry.subscribers(topic)
    count = await store.count(socket_key(connection_id), topic)
    assert count >= 0
    assert member == (count > 0), f"member={member} count={count}"


class TestReferenceCounting:
    async def test_subscribe_adds_member_and_count(self, registry, store):
        result = await registry.subscribe("doc-1", "c1")

        assert result.ok
        assert result.value == 1
        assert await registry.subscribers("doc-1") == {"c1"}
        assert await registry.topics_for("c1") == {"doc-1": 1}

    @pytest.mark.parametrize("k", [1, 2, 5])
    async def test_k_subscribes_then_k_unsubscribes_removes_entry(self, registry, store, k):
        for _ in range(k):
            await registry.subscribe("doc-1", "c1")
        assert await store.count(socket_key("c1"), "doc-1") == k

        for _ in range(k):
            await registry.unsubscribe("doc-1", "c1")

        assert "c1" not in await registry.subscribers("doc-1")
        assert await store.count(socket_key("c1"), "doc-1") == 0
        assert await registry.topics_for("c1") == {}

    async def test_two_subscribes_one_unsubscribe_keeps_membership(self, registry):
        await registry.subscribe("doc-1", "c1")
        await registry.subscribe("doc-1", "c1")
        result = await registry.unsubscribe("doc-1", "c1")

        assert result.value == 1
        assert await registry.subscribers("doc-1") == {"c1"}

    async def test_unsubscribe_without_subscription_is_noop(self, registry, store):
        result = await registry.unsubscribe("doc-1", "c1")

        assert result.ok
        assert result.value == 0
        assert await registry.subscribers("doc-1") == set()
        assert await store.fields(socket_key("c1")) == []

    async def test_extra_unsubscribe_never_goes_negative(self, registry, store):
        await registry.subscribe("doc-1", "c1")
        await registry.unsubscribe("doc-1", "c1")
        await registry.unsubscribe("doc-1", "c1")
        await registry.subscribe("doc-1", "c1")

        assert await store.count(socket_key("c1"), "doc-1") == 1
        assert await registry.subscribers("doc-1") == {"c1"}

    async def test_connections_are_independent(self, registry):
        await registry.subscribe("doc-1", "c1")
        await registry.subscribe("doc-1", "c2")
        await registry.unsubscribe("doc-1", "c1")

        assert await registry.subscribers("doc-1") == {"c2"}


class TestPurge:
    async def test_purge_removes_every_subscription(self, registry, store, metrics):
        await registry.subscribe("doc-1", "c1")
        await registry.subscribe("doc-1", "c1")
        await registry.subscribe("doc-2", "c1")
        await registry.subscribe("doc-2", "c2")

        result = await registry.purge("c1")

        assert result.ok
        assert sorted(result.value) == ["doc-1", "doc-2"]
        assert await registry.subscribers("doc-1") == set()
        assert await registry.subscribers("doc-2") == {"c2"}
        assert await store.fields(socket_key("c1")) == []
        assert metrics.get("purges_total") == 1

    async def test_purge_twice_is_idempotent(self, registry, store):
        await registry.subscribe("doc-1", "c1")

        first = await registry.purge("c1")
        second = await registry.purge("c1")

        assert first.ok and second.ok
        assert second.value == []
        assert await registry.subscribers("doc-1") == set()
        assert await store.fields(socket_key("c1")) == []

    async def test_purge_unknown_connection(self, registry):
        result = await registry.purge("never-seen")
        assert result.ok
        assert result.value == []

    async def test_forget_drops_one_membership(self, registry):
        await registry.subscribe("doc-1", "c1")
        await registry.subscribe("doc-2", "c1")

        assert (await registry.forget("doc-1", "c1")).ok

        assert await registry.subscribers("doc-1") == set()
        assert await registry.subscribers("doc-2") == {"c1"}

    async def test_subscribe_after_purge_starts_fresh(self, registry, store):
        await registry.subscribe("doc-1", "c1")
        await registry.subscribe("doc-1", "c1")
        await registry.purge("c1")
        await registry.subscribe("doc-1", "c1")

        assert await store.count(socket_key("c1"), "doc-1") == 1


class TestConcurrency:
    @pytest.mark.parametrize("initial", [0, 1, 2])
    @pytest.mark.parametrize("order", ["subscribe_first", "unsubscribe_first"])
    async def test_concurrent_subscribe_and_unsubscribe_stay_consistent(
        self, registry, store, initial, order
    ):
        for _ in range(initial):
            await registry.subscribe("doc-1", "c1")

        ops = [registry.subscribe("doc-1", "c1"), registry.unsubscribe("doc-1", "c1")]
        if order == "unsubscribe_first":
            ops.reverse()
        await asyncio.gather(*ops)

        await assert_consistent(registry, store, "doc-1", "c1")

    async def test_interleaved_bursts_stay_consistent(self, registry, store):
        pattern = ["sub", "unsub", "unsub", "sub", "sub", "unsub"]
        for sequence in itertools.permutations(pattern, 4):
            ops = [
                registry.subscribe("doc-1", "c1") if op == "sub" else registry.unsubscribe("doc-1", "c1")
                for op in sequence
            ]
            await asyncio.gather(*ops)
            await assert_consistent(registry, store, "doc-1", "c1")

    @pytest.mark.parametrize("order", ["purge_first", "subscribe_first"])
    async def test_purge_racing_a_new_subscribe_leaves_no_orphan(self, registry, store, order):
        await registry.subscribe("doc-1", "c1")

        ops = [registry.purge("c1"), registry.subscribe("doc-9", "c1")]
        if order == "subscribe_first":
            ops.reverse()
        await asyncio.gather(*ops)

        await assert_consistent(registry, store, "doc-1", "c1")
        await assert_consistent(registry, store, "doc-9", "c1")

        await registry.purge("c1")
        assert "c1" not in await registry.subscribers("doc-9")
        assert await store.fields(socket_key("c1")) == []

    async def test_purge_after_concurrent_subscribes_leaves_nothing(self, registry, store):
        await asyncio.gather(*(registry.subscribe(f"doc-{i}", "c1") for i in range(5)))
        await registry.purge("c1")

        for i in range(5):
            assert "c1" not in await registry.subscribers(f"doc-{i}")
        assert await store.fields(socket_key("c1")) == []


class TestStoreFailures:
    @pytest.fixture
    def flaky(self):
        return FlakyRegistryStore()

    @pytest.fixture
    def flaky_registry(self, flaky, metrics):
        return SubscriptionRegistry(flaky, metrics)

    async def test_subscribe_failure_is_returned_not_raised(self, flaky, flaky_registry, metrics):
        flaky.down = True

        result = await flaky_registry.subscribe("doc-1", "c1")

        assert not result.ok
        assert "connection refused" in str(result.error)
        assert metrics.get("store_errors_total") == 1

    async def test_unsubscribe_failure_is_returned_not_raised(self, flaky, flaky_registry):
        await flaky_registry.subscribe("doc-1", "c1")
        flaky.down = True

        result = await flaky_registry.unsubscribe("doc-1", "c1")

        assert not result.ok
        flaky.down = False
        assert await flaky_registry.subscribers("doc-1") == {"c1"}

    async def test_purge_failure_then_retry_converges(self, flaky, flaky_registry):
        await flaky_registry.subscribe("doc-1", "c1")
        flaky.down = True
        assert not (await flaky_registry.purge("c1")).ok

        flaky.down = False
        assert (await flaky_registry.purge("c1")).ok
        assert await flaky_registry.subscribers("doc-1") == set()
