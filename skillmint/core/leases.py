import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Request
from loguru import logger

from skillmint.core.errors import Internal


def user_key(user_id) -> str:
    return f"user:{user_id}"


def order_key(order_id) -> str:
    return f"order:{order_id}"


class _Lease:
    __slots__ = ("lock", "holder", "depth", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.holder: asyncio.Task | None = None
        self.depth = 0
        self.users = 0  # holders + waiters, the lease is dropped at zero


class LeaseManager:
    """
    In-process exclusive leases keyed by string (``user:<id>``, ``order:<id>``).

    - ``hold(*keys)`` acquires every key in lexicographic order, so two tasks
      asking for overlapping sets can never deadlock.
    - Leases are re-entrant for the task that holds them: an envelope that
      already owns ``user:A`` may call into the ledger which asks for it again.
    - Entity keys (order, withdrawal, commission, topup) are taken first, each in
      its own hold; user keys come after, together in one nested hold. A task
      holding user keys never asks for an entity key.
    """

    def __init__(self):
        self._leases: dict[str, _Lease] = {}
        self._closed = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def active(self) -> int:
        return len(self._leases)

    async def _acquire(self, key: str, task: asyncio.Task) -> None:
        lease = self._leases.get(key)
        if lease is None:
            lease = self._leases[key] = _Lease()
            self._idle.clear()
        if lease.holder is task:
            lease.depth += 1
            return
        lease.users += 1
        try:
            await lease.lock.acquire()
        except BaseException:
            lease.users -= 1
            self._drop_if_unused(key, lease)
            raise
        lease.holder = task
        lease.depth = 1

    def _release(self, key: str) -> None:
        lease = self._leases[key]
        lease.depth -= 1
        if lease.depth > 0:
            return
        lease.holder = None
        lease.users -= 1
        lease.lock.release()
        self._drop_if_unused(key, lease)

    def _drop_if_unused(self, key: str, lease: _Lease) -> None:
        if lease.users <= 0 and self._leases.get(key) is lease:
            del self._leases[key]
        if not self._leases:
            self._idle.set()

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        if self._closed:
            raise Internal("Service is shutting down")
        task = asyncio.current_task()
        ordered = sorted({str(k) for k in keys if k})
        acquired: list[str] = []
        try:
            for key in ordered:
                await self._acquire(key, task)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)

    async def drain(self, timeout: float = 10.0) -> None:
        """Stop handing out leases and wait for in-flight holders to finish."""
        self._closed = True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            logger.info("🔒 Lease manager drained")
        except asyncio.TimeoutError:
            logger.warning(f"⚠ Lease manager drain timed out with {self.active} active leases")


def get_lease_manager(request: Request) -> LeaseManager:
    return request.app.state.leases
