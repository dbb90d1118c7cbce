"""Rate limiting and request deadlines on a bare application."""

import asyncio

import httpx
from fastapi import FastAPI

from skillmint.middleware.rate_limit import RateLimitMiddleware
from skillmint.middleware.request_deadline import RequestDeadlineMiddleware


def _app(
    requests_per_minute: int = 2,
    timeout_seconds: float = 5.0,
    trusted_proxies: list[str] | None = None,
    effects: list[str] | None = None,
) -> FastAPI:
    app = FastAPI()

    @app.get("/ping")
    async def ping():
        return {"pong": True}

    @app.get("/slow")
    async def slow():
        await asyncio.sleep(0.2)
        if effects is not None:
            effects.append("committed")
        return {"done": True}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.add_middleware(RequestDeadlineMiddleware, timeout_seconds=timeout_seconds)
    app.add_middleware(
        RateLimitMiddleware, requests_per_minute=requests_per_minute, trusted_proxies=trusted_proxies
    )
    return app


def _client(app: FastAPI) -> httpx.AsyncClient:
    # ASGITransport reports the peer as 127.0.0.1
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestRateLimit:
    async def test_blocks_after_limit(self) -> None:
        async with _client(_app(requests_per_minute=2)) as client:
            first = await client.get("/ping")
            second = await client.get("/ping")
            third = await client.get("/ping")

        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.status_code == 200
        assert third.status_code == 429
        assert third.headers["Retry-After"] == "60"
        assert third.json()["success"] is False

    async def test_forwarded_clients_counted_separately_behind_trusted_proxy(self) -> None:
        async with _client(_app(requests_per_minute=1, trusted_proxies=["127.0.0.1"])) as client:
            a = await client.get("/ping", headers={"X-Forwarded-For": "10.0.0.1"})
            b = await client.get("/ping", headers={"X-Forwarded-For": "10.0.0.2"})
            again = await client.get("/ping", headers={"X-Forwarded-For": "10.0.0.1"})

        assert (a.status_code, b.status_code, again.status_code) == (200, 200, 429)

    async def test_forwarded_header_ignored_from_untrusted_peer(self) -> None:
        async with _client(_app(requests_per_minute=1)) as client:
            a = await client.get("/ping", headers={"X-Forwarded-For": "10.0.0.1"})
            b = await client.get("/ping", headers={"X-Forwarded-For": "10.0.0.2"})

        assert (a.status_code, b.status_code) == (200, 429)

    def test_idle_clients_are_dropped(self) -> None:
        limiter = RateLimitMiddleware(FastAPI(), requests_per_minute=5, window_seconds=60)
        assert limiter.admit("10.0.0.1", 0.0) == 4
        assert limiter.admit("10.0.0.2", 1.0) == 4

        assert limiter.admit("10.0.0.3", 70.0) == 4
        assert set(limiter.hits) == {"10.0.0.3"}

    async def test_health_is_exempt(self) -> None:
        async with _client(_app(requests_per_minute=1)) as client:
            codes = [(await client.get("/health")).status_code for _ in range(3)]
        assert codes == [200, 200, 200]

    async def test_zero_disables(self) -> None:
        async with _client(_app(requests_per_minute=0)) as client:
            codes = [(await client.get("/ping")).status_code for _ in range(5)]
        assert codes == [200] * 5


class TestDeadline:
    async def test_slow_request_times_out(self) -> None:
        async with _client(_app(timeout_seconds=0.05)) as client:
            resp = await client.get("/slow")
        assert resp.status_code == 504
        assert resp.json()["errors"] == {"deadline_seconds": 0.05}

    async def test_handler_is_cancelled_on_expiry(self) -> None:
        effects: list[str] = []
        async with _client(_app(timeout_seconds=0.05, effects=effects)) as client:
            resp = await client.get("/slow")
            await asyncio.sleep(0.3)

        assert resp.status_code == 504
        assert effects == []

    async def test_fast_request_passes(self) -> None:
        async with _client(_app(timeout_seconds=0.5)) as client:
            resp = await client.get("/ping")
        assert resp.json() == {"pong": True}
