"""In-process leases: re-entrancy, mutual exclusion, ordering and drain."""

import asyncio

import pytest

from skillmint.core.errors import Internal
from skillmint.core.leases import LeaseManager, order_key, user_key


class TestLeaseManager:
    async def test_reentrant_for_same_task(self) -> None:
        leases = LeaseManager()
        async with leases.hold(user_key("a")):
            async with leases.hold(user_key("a"), user_key("b")):
                assert leases.active == 2
            assert leases.active == 1
        assert leases.active == 0

    async def test_serializes_holders_of_same_key(self) -> None:
        leases = LeaseManager()
        trace: list[str] = []

        async def worker(name: str):
            async with leases.hold(order_key("o1")):
                trace.append(f"{name}:in")
                await asyncio.sleep(0.01)
                trace.append(f"{name}:out")

        await asyncio.gather(worker("a"), worker("b"))
        assert trace in (
            ["a:in", "a:out", "b:in", "b:out"],
            ["b:in", "b:out", "a:in", "a:out"],
        )

    async def test_overlapping_sets_do_not_deadlock(self) -> None:
        leases = LeaseManager()
        done: list[str] = []

        async def worker(name: str, keys):
            for _ in range(20):
                async with leases.hold(*keys):
                    await asyncio.sleep(0)
            done.append(name)

        await asyncio.wait_for(
            asyncio.gather(
                worker("ab", (user_key("a"), user_key("b"))),
                worker("ba", (user_key("b"), user_key("a"))),
            ),
            timeout=5,
        )
        assert sorted(done) == ["ab", "ba"]

    async def test_lease_released_on_error(self) -> None:
        leases = LeaseManager()
        with pytest.raises(RuntimeError):
            async with leases.hold(user_key("a")):
                raise RuntimeError("boom")
        assert leases.active == 0

    async def test_cancelled_waiter_is_cleaned_up(self) -> None:
        leases = LeaseManager()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with leases.hold(user_key("a")):
                entered.set()
                await release.wait()

        async def waiter():
            async with leases.hold(user_key("a")):
                pass

        holding = asyncio.create_task(holder())
        await entered.wait()
        waiting = asyncio.create_task(waiter())
        await asyncio.sleep(0.01)
        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting
        release.set()
        await holding
        assert leases.active == 0

    async def test_drain_refuses_new_holds(self) -> None:
        leases = LeaseManager()
        await leases.drain(timeout=1)
        with pytest.raises(Internal):
            async with leases.hold(user_key("a")):
                pass
