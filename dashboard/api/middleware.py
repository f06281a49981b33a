"""
Pipeline Pulse — Response Cache Middleware
===========================================
Caches successful GET JSON responses in the shared TTLCacheService, keyed by
path and query string, and marks each response with X-Cache: HIT or MISS.

A request with ?cache=false or ?forceFresh=true bypasses the cache. Any
successful POST clears the cached responses and the derived dashboard,
revenue and attribution entries, since syncs and repairs change them.
"""
from __future__ import annotations

import time
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from scripts.lib.cache import TTLCacheService, cache_service, invalidate_data_caches
from scripts.lib.logger import setup_logger

logger = setup_logger("api_middleware")

RESPONSE_CACHE_PREFIX = "response:"
RESPONSE_CACHE_TTL = 300

# Live views that must never be served from cache
UNCACHED_PATHS = {
    "/api/health",
    "/api/sync/status",
    "/api/cache/stats",
    "/docs",
    "/openapi.json",
    "/redoc",
}


def _cache_key(request: Request) -> str:
    query = str(request.url.query)
    return f"{RESPONSE_CACHE_PREFIX}{request.url.path}?{query}" if query else \
        f"{RESPONSE_CACHE_PREFIX}{request.url.path}"


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """
    Serve repeated GETs from the TTL cache.

    Only 200 responses with a JSON content type are stored.
    """

    def __init__(self, app, cache: Optional[TTLCacheService] = None,
                 ttl: int = RESPONSE_CACHE_TTL):
        super().__init__(app)
        self.cache = cache or cache_service
        self.ttl = ttl

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path

        if request.method != "GET":
            response = await call_next(request)
            if request.method == "POST" and response.status_code < 400:
                cleared = invalidate_data_caches(self.cache)
                if cleared:
                    logger.debug("Cleared %d cached entries after POST %s", cleared, path)
            return response

        if path in UNCACHED_PATHS or not path.startswith("/api/"):
            return await call_next(request)

        params = request.query_params
        if params.get("cache", "").lower() == "false" or params.get("forceFresh", "").lower() == "true":
            response = await call_next(request)
            response.headers["X-Cache"] = "BYPASS"
            return response

        key = _cache_key(request)
        cached = self.cache.get(key)
        if cached is not None:
            return Response(
                content=cached["body"],
                status_code=200,
                media_type="application/json",
                headers={"X-Cache": "HIT", "Age": str(int(time.time() - cached["_cached_at"]))},
            )

        response = await call_next(request)
        content_type = response.headers.get("content-type", "")
        if response.status_code != 200 or "application/json" not in content_type:
            response.headers["X-Cache"] = "MISS"
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        self.cache.set(key, {"body": body, "_cached_at": time.time()}, ttl=self.ttl)

        headers = dict(response.headers)
        headers.pop("content-length", None)
        headers["X-Cache"] = "MISS"
        return Response(
            content=body,
            status_code=response.status_code,
            headers=headers,
            media_type="application/json",
        )
