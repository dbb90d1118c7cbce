from starlette.middleware.base import BaseHTTPMiddleware

from skillmint.core.context import current_request


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Keeps the current Request in a ContextVar so services can read it."""

    async def dispatch(self, request, call_next):
        token = current_request.set(request)
        try:
            response = await call_next(request)
        finally:
            current_request.reset(token)
        return response
