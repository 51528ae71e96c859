"""Tenant resolution middleware for FastAPI."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from src.core.constants import TENANT_HEADER


class TenantMiddleware(BaseHTTPMiddleware):
    """Copy the ``X-Tenant-ID`` header onto ``request.state.tenant_id``.

    Missing or blank headers leave ``tenant_id`` as ``None``; guards fall back
    to the ``tenant_id`` query parameter before denying.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        tenant_id = request.headers.get(TENANT_HEADER, "").strip()
        request.state.tenant_id = tenant_id or None
        return await call_next(request)
