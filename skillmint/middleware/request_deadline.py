import asyncio

from loguru import logger

from skillmint.core.errors import UpstreamTimeout
from skillmint.libs.response import error_response


class RequestDeadlineMiddleware:
    """
    Bounds every request. The downstream app runs inside ``wait_for``, so on
    expiry the handler is cancelled at its next await and its session rolls
    back on close. A 504 envelope is sent unless the response already started.
    """

    def __init__(self, app, timeout_seconds: float = 30.0):
        self.app = app
        self.timeout_seconds = timeout_seconds

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds

        async def send_tracked(message):
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, receive, send_tracked), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            if loop.time() < deadline:
                # raised by the handler itself
                raise
            logger.error(f"⏱ {scope['method']} {scope['path']} exceeded {self.timeout_seconds}s")
            if started:
                return
            response = error_response(
                504, UpstreamTimeout.message_default, {"deadline_seconds": self.timeout_seconds}
            )
            await response(scope, receive, send)
